#!/usr/bin/env python3
"""Core deterministic logic for the resume analyzer."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
import math
import re

import yaml


DEFAULT_MODELS = (
    "gemini-2.5-flash",
    "gemini-2.0-flash",
    "gemini-2.0-flash-001",
    "gemini-1.5-flash",
    "gemini-1.5-flash-latest",
    "gemini-1.5-pro",
    "gemini-pro",
)
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
DEFAULT_DEADLINE_SECONDS = 180.0

PDF_SIGNATURE = b"%PDF"
# readers accept the header anywhere in the first 1024 bytes
PDF_HEADER_WINDOW = 1024

REPORT_SECTIONS = (
    "Executive Summary",
    "Strengths",
    "Areas for Improvement",
    "Actionable Recommendations",
    "Career Fit",
)


class AnalysisError(Exception):
    """Base class for failures surfaced to the user."""


class InvalidInputFormat(AnalysisError):
    """The upload is not a PDF, or no resume input was given."""


class ExtractionFailed(AnalysisError):
    """Text could not be read out of the uploaded PDF."""


class ModelUnavailable(AnalysisError):
    """A candidate model identifier is not recognized by the service."""


class RequestFailed(AnalysisError):
    """A candidate call failed for any reason other than not-found."""


class AnalysisInProgress(AnalysisError):
    """Another analysis is still outstanding."""


class AllModelsExhausted(AnalysisError):
    """Every candidate model failed; carries the last failure."""

    def __init__(self, last_error: BaseException | None):
        self.last_error = last_error
        reason = str(last_error) if last_error is not None else "no candidate models configured"
        super().__init__(f"All models failed. Last error: {reason}")


@dataclass(frozen=True)
class AnalyzerSettings:
    models: tuple[str, ...] = DEFAULT_MODELS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    deadline_seconds: float = DEFAULT_DEADLINE_SECONDS


def parse_model_list(raw: str | Iterable[str]) -> tuple[str, ...]:
    """Normalize a comma-separated string or a list into candidate model names."""
    if isinstance(raw, str):
        items: Iterable[object] = raw.split(",")
    else:
        items = raw

    models: list[str] = []
    for item in items:
        if not isinstance(item, str):
            raise ValueError(f"Model names must be strings (got: {item!r})")
        name = item.strip()
        if name and name not in models:
            models.append(name)
    if not models:
        raise ValueError("At least one candidate model is required.")
    return tuple(models)


def _positive_seconds(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or value <= 0
    ):
        raise ValueError(f"{key} must be a positive number (got: {value!r})")
    return float(value)


def load_analyzer_settings(path: Path | None) -> AnalyzerSettings:
    """Load analyzer settings from YAML. Missing or empty file returns defaults."""
    if path is None or not path.exists():
        return AnalyzerSettings()

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return AnalyzerSettings()
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must have a top-level mapping.")

    unknown = sorted(set(data) - {"models", "request_timeout_seconds", "deadline_seconds"})
    if unknown:
        raise ValueError(f"Unknown settings in {path.name}: {', '.join(unknown)}")

    models = DEFAULT_MODELS
    if "models" in data:
        if not isinstance(data["models"], (list, str)):
            raise ValueError("models must be a list of model names.")
        models = parse_model_list(data["models"])

    return AnalyzerSettings(
        models=models,
        request_timeout_seconds=_positive_seconds(
            data, "request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS
        ),
        deadline_seconds=_positive_seconds(data, "deadline_seconds", DEFAULT_DEADLINE_SECONDS),
    )


def ensure_pdf_upload(filename: str, data: bytes) -> None:
    """Reject uploads that are not PDF documents."""
    suffix = Path(filename).suffix.lower()
    if suffix != ".pdf":
        raise InvalidInputFormat(f"Please upload a PDF file (got: {suffix or 'no extension'}).")
    if not data:
        raise InvalidInputFormat(f"Uploaded file is empty: {filename}")
    if PDF_SIGNATURE not in data[:PDF_HEADER_WINDOW]:
        raise InvalidInputFormat(f"Uploaded file is not a valid PDF document: {filename}")


def join_page_texts(pages: Sequence[str]) -> str:
    """Concatenate page texts in document order, one newline between pages."""
    return "\n".join(pages)


def build_analysis_prompt(content: str) -> str:
    """Wrap resume text in the fixed analysis template."""
    return f"""You are an expert career coach and resume analyst. Please analyze the following resume text and provide structured feedback.

Resume Content:
{content}

Please provide the analysis in the following Markdown format:
# Resume Analysis

## 🎯 Executive Summary
[Brief 2-3 sentence overview of the candidate's profile]

## ✅ Strengths
- [Strength 1]
- [Strength 2]
- [Strength 3]

## ⚠️ Areas for Improvement
- [Weakness 1]
- [Weakness 2]

## 💡 Actionable Recommendations
1. [Recommendation 1]
2. [Recommendation 2]
3. [Recommendation 3]

## 🔮 Career Fit
[Suggested roles or industries based on skills]
"""


def strip_markdown_fence(report: str) -> str:
    """Remove a code fence wrapped around the whole report, if any."""
    stripped = report.strip()
    match = re.match(r"^```[\w-]*\s*\n(.*?)\n?```$", stripped, flags=re.DOTALL)
    if match:
        return match.group(1).strip()
    return stripped


def missing_report_sections(report: str) -> list[str]:
    """Return the template sections that do not appear as headings in *report*."""
    headings = [
        line.lstrip("#").strip().lower()
        for line in report.splitlines()
        if re.match(r"^\s*#{1,6}\s", line)
    ]
    return [
        section
        for section in REPORT_SECTIONS
        if not any(section.lower() in heading for heading in headings)
    ]
