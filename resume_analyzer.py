#!/usr/bin/env python3
"""
Resume Analyzer - Critiques a resume with Gemini and saves a Markdown report.

Usage:
    python resume_analyzer.py [--resume-pdf Resume.pdf | --resume-text TEXT | --resume-text-file FILE]
                              [--api-key KEY] [--config analyzer_config.yaml] [--models a,b,c]

By default:
    - Resume: pasted interactively when no resume option is given
    - Settings: ./analyzer_config.yaml if present, built-in defaults otherwise
    - Reports: written to ./analysis_reports as .md and .docx
"""

from __future__ import annotations

import argparse
import datetime
import io
import os
import re
import sys
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
import pypdf
from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Pt

from analysis_core import (
    AllModelsExhausted,
    AnalysisError,
    AnalysisInProgress,
    AnalyzerSettings,
    ExtractionFailed,
    InvalidInputFormat,
    ModelUnavailable,
    RequestFailed,
    build_analysis_prompt,
    ensure_pdf_upload,
    join_page_texts,
    load_analyzer_settings,
    missing_report_sections,
    parse_model_list,
    strip_markdown_fence,
)

# === CONFIGURATION ===
WORKSPACE_DIR = Path.cwd()
DEFAULT_CONFIG = WORKSPACE_DIR / "analyzer_config.yaml"
DEFAULT_REPORTS_FOLDER = WORKSPACE_DIR / "analysis_reports"
API_KEY_ENV_VAR = "GEMINI_API_KEY"


# === PERFORMANCE UTILITIES ===
@contextmanager
def timed_section(name: str) -> Iterator[None]:
    """Report how long a block took."""
    start = time.perf_counter()
    try:
        yield
    finally:
        print(f"  [TIMING] {name}: {time.perf_counter() - start:.2f}s")


class Spinner:
    """CLI spinner shown while waiting on the network."""
    UNICODE_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
    ASCII_FRAMES = ["-", "\\", "|", "/"]

    def __init__(self, message: str = "Analyzing"):
        self.message = message
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        encoding = sys.stdout.encoding or "utf-8"
        try:
            "".join(self.UNICODE_FRAMES).encode(encoding)
            self.frames = self.UNICODE_FRAMES
        except (LookupError, UnicodeEncodeError):
            self.frames = self.ASCII_FRAMES

    def _spin(self) -> None:
        idx = 0
        while not self._stop_event.wait(0.1):
            print(f"\r  {self.frames[idx % len(self.frames)]} {self.message}...", end="", flush=True)
            idx += 1
        print("\r" + " " * (len(self.message) + 10) + "\r", end="", flush=True)

    def __enter__(self) -> "Spinner":
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *args) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=0.5)


class AnalysisGuard:
    """Allows a single outstanding analysis; a second trigger is rejected."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise AnalysisInProgress("An analysis is already running. Wait for it to finish.")
        try:
            yield
        finally:
            self._lock.release()


# === CONTENT ACQUISITION ===
def extract_pdf_pages(data: bytes) -> list[str]:
    """Extract per-page text from PDF bytes, in document order."""
    reader = pypdf.PdfReader(io.BytesIO(data))
    return [page.extract_text() or "" for page in reader.pages]


def acquire_resume_text(
    pasted_text: str | None = None,
    upload: tuple[str, bytes] | None = None,
) -> str:
    """Return resume text from pasted input or an uploaded PDF (filename, bytes)."""
    if pasted_text and pasted_text.strip():
        return pasted_text.strip()
    if upload is None:
        raise InvalidInputFormat("No resume provided. Upload a PDF or paste the resume text.")

    filename, data = upload
    ensure_pdf_upload(filename, data)
    try:
        text = join_page_texts(extract_pdf_pages(data))
    except Exception as e:
        raise ExtractionFailed(
            f"Failed to read PDF {filename}: {e}. Please try pasting the text instead."
        ) from e
    if not text.strip():
        raise ExtractionFailed(
            f"No readable text found in {filename}. Please try pasting the text instead."
        )
    return text


# === GEMINI ORCHESTRATION ===
def create_client(api_key: str, request_timeout_seconds: float) -> genai.Client:
    """Build a Gemini client whose calls time out after *request_timeout_seconds*."""
    return genai.Client(
        api_key=api_key,
        http_options=types.HttpOptions(timeout=int(request_timeout_seconds * 1000)),
    )


def is_model_not_found(error: BaseException) -> bool:
    return isinstance(error, genai_errors.APIError) and error.code == 404


def _response_text(response: object) -> str:
    candidates = getattr(response, "candidates", None)
    if not candidates:
        raise RequestFailed("Empty response from model")
    content = candidates[0].content
    parts = content.parts if content is not None else None
    if not parts or parts[0].text is None:
        raise RequestFailed("Model response contained no text")
    return parts[0].text


def log_available_models(client: genai.Client) -> list[str] | None:
    """Print the model names this credential can access. Never raises."""
    try:
        names = [model.name for model in client.models.list()]
    except Exception as e:
        print(f"ERROR: Failed to list models: {e}", file=sys.stderr)
        return None
    listing = "\n".join(f"  - {name}" for name in names) or "  [none]"
    print(f"Available models for this key:\n{listing}", file=sys.stderr)
    return names


def generate_with_fallback(
    client: genai.Client,
    prompt: str,
    models: Sequence[str],
    deadline_seconds: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Try each candidate model in order and return the first generated text."""
    started = clock()
    last_error: AnalysisError | None = None

    for model in models:
        if deadline_seconds is not None and clock() - started >= deadline_seconds:
            message = f"Analysis deadline of {deadline_seconds:g}s exceeded before trying {model}"
            if last_error is not None:
                message += f"; previous error: {last_error}"
            deadline_error = RequestFailed(message)
            deadline_error.__cause__ = last_error
            last_error = deadline_error
            print(f"ERROR: {last_error}", file=sys.stderr)
            break

        print(f"Attempting model: {model}")
        try:
            response = client.models.generate_content(model=model, contents=prompt)
            return _response_text(response)
        except RequestFailed as e:
            last_error = e
            print(f"ERROR: Model {model}: {e}", file=sys.stderr)
        except genai_errors.APIError as e:
            if is_model_not_found(e):
                last_error = ModelUnavailable(f"Model {model} not found (404)")
                print(f"WARNING: Model {model} not found (404). Trying next...", file=sys.stderr)
            else:
                last_error = RequestFailed(f"API Error ({e.code} {e.status}): {e.message}")
                print(f"ERROR: Model {model}: {last_error}", file=sys.stderr)
        except Exception as e:
            last_error = RequestFailed(f"{type(e).__name__}: {e}")
            print(f"ERROR: Model {model}: {last_error}", file=sys.stderr)

    print("ERROR: All models failed.", file=sys.stderr)
    log_available_models(client)
    raise AllModelsExhausted(last_error)


def run_analysis(
    api_key: str | None,
    content: str | None,
    settings: AnalyzerSettings,
    guard: AnalysisGuard,
    client_factory: Callable[[str, float], genai.Client] | None = None,
) -> str | None:
    """Analyze resume text. Returns None without any request if key or content is blank."""
    if not api_key or not api_key.strip() or not content or not content.strip():
        return None

    prompt = build_analysis_prompt(content.strip())
    with guard.hold():
        factory = client_factory or create_client
        client = factory(api_key.strip(), settings.request_timeout_seconds)
        report = generate_with_fallback(client, prompt, settings.models, settings.deadline_seconds)
    return strip_markdown_fence(report)


# === CLI ===
def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse and validate command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Analyze a resume with Gemini AI and save a structured critique.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Defaults:
  resume input   pasted interactively when no resume option is given
  --config       {DEFAULT_CONFIG.name} (if file exists)
  --output-dir   {DEFAULT_REPORTS_FOLDER.name}/
""",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--resume-pdf", help="Path to the resume PDF")
    source.add_argument("--resume-text", help="Resume text passed directly")
    source.add_argument("--resume-text-file", help="Path to a plain-text resume")
    parser.add_argument(
        "--api-key",
        help=f"Gemini API key (overrides {API_KEY_ENV_VAR} env var)",
    )
    parser.add_argument("--config", help="Path to analyzer settings YAML")
    parser.add_argument(
        "--models",
        help="Comma-separated candidate models, most preferred first (overrides config)",
    )
    parser.add_argument("--output-dir", help="Folder for saved reports")
    parser.add_argument(
        "--no-save",
        action="store_true",
        help="Print the report without writing .md/.docx files",
    )
    return parser.parse_args(argv)


def get_api_key(cli_key: str | None) -> str:
    """Get API key from CLI arg or environment variable."""
    if cli_key and cli_key.strip():
        return cli_key.strip()
    env_key = os.environ.get(API_KEY_ENV_VAR, "").strip()
    if env_key:
        return env_key
    print("ERROR: No API key provided.", file=sys.stderr)
    print(f"Set {API_KEY_ENV_VAR} environment variable or use --api-key argument.", file=sys.stderr)
    sys.exit(1)


def resolve_settings(config_arg: str | None, models_arg: str | None) -> AnalyzerSettings:
    """Load settings from YAML, then apply the --models override."""
    config_path: Path | None = None
    if config_arg:
        config_path = Path(config_arg)
        if not config_path.exists():
            print(f"ERROR: --config file not found: {config_path}", file=sys.stderr)
            sys.exit(1)
    elif DEFAULT_CONFIG.exists():
        config_path = DEFAULT_CONFIG

    try:
        settings = load_analyzer_settings(config_path)
        if models_arg:
            settings = AnalyzerSettings(
                models=parse_model_list(models_arg),
                request_timeout_seconds=settings.request_timeout_seconds,
                deadline_seconds=settings.deadline_seconds,
            )
    except Exception as e:
        print(f"ERROR: Failed to load settings: {e}", file=sys.stderr)
        sys.exit(1)
    return settings


def prompt_for_resume_text() -> str:
    """Prompt the user to paste resume text."""
    print("\n" + "=" * 60)
    print("=== RESUME TEXT INPUT ===")
    print("=" * 60)
    print("Paste the resume text. Submit with two empty lines.")
    print("-" * 40)
    lines: list[str] = []
    empty_count = 0
    while True:
        try:
            line = input()
        except EOFError:
            break
        if line == "":
            empty_count += 1
            if empty_count >= 2:
                break
        else:
            empty_count = 0
        lines.append(line)
    return "\n".join(lines).strip()


def collect_resume_text(args: argparse.Namespace) -> tuple[str, str]:
    """Return (resume_text, label) from CLI args, falling back to pasted text."""
    if args.resume_text:
        return acquire_resume_text(pasted_text=args.resume_text), "Pasted_Resume"

    if args.resume_text_file:
        path = Path(args.resume_text_file)
        if not path.is_file():
            print(f"ERROR: Resume text file not found: {path}", file=sys.stderr)
            sys.exit(1)
        try:
            pasted = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            print(f"ERROR: Resume text file is not valid UTF-8: {path} ({e})", file=sys.stderr)
            sys.exit(1)
        return acquire_resume_text(pasted_text=pasted), path.stem

    if args.resume_pdf:
        path = Path(args.resume_pdf)
        if not path.is_file():
            print(f"ERROR: Resume file not found: {path}", file=sys.stderr)
            sys.exit(1)
        try:
            with timed_section("PDF extraction"):
                text = acquire_resume_text(upload=(path.name, path.read_bytes()))
            return text, path.stem
        except ExtractionFailed as e:
            print(f"WARNING: {e}", file=sys.stderr)
            pasted = prompt_for_resume_text()
            if not pasted:
                print("ERROR: No pasted resume text provided after PDF extraction failure.", file=sys.stderr)
                sys.exit(1)
            return acquire_resume_text(pasted_text=pasted), f"{path.stem}_pasted"

    pasted = prompt_for_resume_text()
    return acquire_resume_text(pasted_text=pasted), "Pasted_Resume"


def print_section(title: str, content: str) -> None:
    """Print a clearly labeled section to terminal."""
    print(f"\n{'=' * 60}")
    print(f"=== {title} ===")
    print("=" * 60)
    print(content)
    print()


def _report_stem(label: str) -> str:
    date_str = datetime.datetime.now().strftime("%Y%m%d")
    safe_label = re.sub(r"[^\w\s-]", "", label).strip().replace(" ", "_") or "Resume"
    return f"{safe_label}_analysis_{date_str}"


def save_report_as_markdown(report: str, label: str, output_dir: Path) -> Path:
    """Save the raw Markdown report."""
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / f"{_report_stem(label)}.md"
    filepath.write_text(report + "\n", encoding="utf-8")
    print(f"Saved Markdown report: {filepath}")
    return filepath


def _add_inline_runs(paragraph, text: str) -> None:
    # **bold** spans alternate with plain text after the split
    for idx, chunk in enumerate(re.split(r"\*\*(.+?)\*\*", text)):
        if not chunk:
            continue
        run = paragraph.add_run(chunk)
        if idx % 2 == 1:
            run.bold = True


def save_report_as_word(report: str, label: str, output_dir: Path) -> Path:
    """Render the Markdown report into a Word document."""
    output_dir.mkdir(parents=True, exist_ok=True)

    doc = Document()
    style = doc.styles["Normal"]
    style.font.name = "Calibri"
    style.font.size = Pt(11)

    for line in report.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        heading = re.match(r"^(#{1,6})\s+(.*)$", stripped)
        numbered = re.match(r"^\d+[.)]\s+(.*)$", stripped)
        if heading:
            level = len(heading.group(1))
            p = doc.add_heading(heading.group(2).replace("**", ""), level=level)
            if level == 1:
                p.alignment = WD_ALIGN_PARAGRAPH.CENTER
        elif stripped.startswith(("- ", "* ")):
            _add_inline_runs(doc.add_paragraph(style="List Bullet"), stripped[2:].strip())
        elif numbered:
            _add_inline_runs(doc.add_paragraph(style="List Number"), numbered.group(1))
        else:
            _add_inline_runs(doc.add_paragraph(), stripped)

    filepath = output_dir / f"{_report_stem(label)}.docx"
    doc.save(filepath)
    print(f"Saved Word document: {filepath}")
    return filepath


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    total_start = time.perf_counter()

    args = parse_args(argv)
    api_key = get_api_key(args.api_key)
    settings = resolve_settings(args.config, args.models)
    output_dir = Path(args.output_dir) if args.output_dir else DEFAULT_REPORTS_FOLDER

    try:
        resume_text, label = collect_resume_text(args)
    except AnalysisError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    print("-" * 60)
    print(f"Resume: {label} ({len(resume_text)} chars)")
    print(f"Models: {', '.join(settings.models)}")
    print(f"Timeouts: {settings.request_timeout_seconds:g}s per call, {settings.deadline_seconds:g}s overall")
    print("-" * 60)

    guard = AnalysisGuard()
    with Spinner("Gemini analyzing resume"), timed_section("Analysis API"):
        try:
            report = run_analysis(api_key, resume_text, settings, guard)
        except AnalysisError as e:
            print(f"\nERROR: Analysis failed: {e}", file=sys.stderr)
            sys.exit(1)

    if report is None:
        print("ERROR: Resume text is empty; nothing to analyze.", file=sys.stderr)
        sys.exit(1)

    print_section("RESUME ANALYSIS", report)

    missing = missing_report_sections(report)
    if missing:
        print("WARNING: Report is missing expected sections:", file=sys.stderr)
        for section in missing:
            print(f"  - {section}", file=sys.stderr)

    saved: list[Path] = []
    if not args.no_save:
        with timed_section("Report export"):
            saved.append(save_report_as_markdown(report, label, output_dir))
            saved.append(save_report_as_word(report, label, output_dir))

    print("\n" + "=" * 60)
    print("COMPLETE!")
    for path in saved:
        print(f"  - {path.suffix.lstrip('.').upper()}: {path}")
    print(f"  - Total time: {time.perf_counter() - total_start:.2f}s")
    print("=" * 60)


if __name__ == "__main__":
    main()
