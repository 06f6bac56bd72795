import threading
from types import SimpleNamespace

import pytest
from google.genai import errors as genai_errors

import resume_analyzer
from analysis_core import AllModelsExhausted, AnalysisInProgress, AnalyzerSettings


def _response(text: str) -> SimpleNamespace:
    part = SimpleNamespace(text=text)
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


def _api_error(code: int, status: str, message: str) -> genai_errors.ClientError:
    return genai_errors.ClientError(
        code, {"error": {"code": code, "message": message, "status": status}}
    )


class _FakeModels:
    def __init__(self, outcomes: dict, listed: object = ()):
        self.outcomes = outcomes
        self.listed = listed
        self.calls: list[str] = []
        self.prompts: list[str] = []
        self.list_calls = 0

    def generate_content(self, model: str, contents: str):
        self.calls.append(model)
        self.prompts.append(contents)
        outcome = self.outcomes[model]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def list(self):
        self.list_calls += 1
        if isinstance(self.listed, BaseException):
            raise self.listed
        return [SimpleNamespace(name=name) for name in self.listed]


class _FakeClient:
    def __init__(self, models: _FakeModels):
        self.models = models


def test_fallback_skips_not_found_models_in_order() -> None:
    models = _FakeModels(
        {
            "model-a": _api_error(404, "NOT_FOUND", "models/model-a is not found"),
            "model-b": _api_error(404, "NOT_FOUND", "models/model-b is not found"),
            "model-c": _response("# Resume Analysis from C"),
            "model-d": _response("never used"),
        }
    )

    text = resume_analyzer.generate_with_fallback(
        _FakeClient(models), "PROMPT", ["model-a", "model-b", "model-c", "model-d"]
    )

    assert text == "# Resume Analysis from C"
    assert models.calls == ["model-a", "model-b", "model-c"]
    assert models.prompts == ["PROMPT", "PROMPT", "PROMPT"]
    assert models.list_calls == 0


def test_fallback_continues_past_non_404_failures() -> None:
    models = _FakeModels(
        {
            "model-a": _api_error(403, "PERMISSION_DENIED", "API key not valid"),
            "model-b": ConnectionError("connection reset"),
            "model-c": _response("ok"),
        }
    )

    text = resume_analyzer.generate_with_fallback(
        _FakeClient(models), "PROMPT", ["model-a", "model-b", "model-c"]
    )

    assert text == "ok"
    assert models.calls == ["model-a", "model-b", "model-c"]


def test_fallback_treats_empty_candidates_as_failure() -> None:
    models = _FakeModels(
        {
            "model-a": SimpleNamespace(candidates=[]),
            "model-b": _response("second"),
        }
    )

    assert resume_analyzer.generate_with_fallback(_FakeClient(models), "P", ["model-a", "model-b"]) == "second"


def test_all_models_failing_lists_models_once_and_reports_last_error(capsys) -> None:
    models = _FakeModels(
        {
            "model-a": _api_error(404, "NOT_FOUND", "not found"),
            "model-b": _api_error(429, "RESOURCE_EXHAUSTED", "Quota exceeded"),
            "model-c": RuntimeError("socket closed by peer"),
        },
        listed=["models/gemini-2.5-flash", "models/embedding-001"],
    )

    with pytest.raises(AllModelsExhausted) as excinfo:
        resume_analyzer.generate_with_fallback(
            _FakeClient(models), "PROMPT", ["model-a", "model-b", "model-c"]
        )

    assert models.calls == ["model-a", "model-b", "model-c"]
    assert models.list_calls == 1
    assert "socket closed by peer" in str(excinfo.value)
    assert "socket closed by peer" in str(excinfo.value.last_error)
    err = capsys.readouterr().err
    assert "models/gemini-2.5-flash" in err
    assert "Quota exceeded" in err


def test_model_listing_failure_does_not_change_outcome() -> None:
    models = _FakeModels(
        {"model-a": _api_error(404, "NOT_FOUND", "not found")},
        listed=RuntimeError("listing unavailable"),
    )

    with pytest.raises(AllModelsExhausted) as excinfo:
        resume_analyzer.generate_with_fallback(_FakeClient(models), "PROMPT", ["model-a"])

    assert "model-a not found" in str(excinfo.value)
    assert models.list_calls == 1


def test_log_available_models_returns_names_or_none() -> None:
    ok = _FakeClient(_FakeModels({}, listed=["models/a", "models/b"]))
    assert resume_analyzer.log_available_models(ok) == ["models/a", "models/b"]

    broken = _FakeClient(_FakeModels({}, listed=RuntimeError("boom")))
    assert resume_analyzer.log_available_models(broken) is None


def test_deadline_stops_remaining_candidates() -> None:
    ticks = iter([0.0, 0.0, 120.0])
    models = _FakeModels(
        {
            "model-a": _api_error(404, "NOT_FOUND", "not found"),
            "model-b": _response("too late"),
        }
    )

    with pytest.raises(AllModelsExhausted) as excinfo:
        resume_analyzer.generate_with_fallback(
            _FakeClient(models),
            "PROMPT",
            ["model-a", "model-b"],
            deadline_seconds=60,
            clock=lambda: next(ticks),
        )

    assert models.calls == ["model-a"]
    assert models.list_calls == 1
    assert "deadline" in str(excinfo.value)


def test_deadline_keeps_previous_candidate_failure() -> None:
    ticks = iter([0.0, 0.0, 30.0])
    models = _FakeModels(
        {
            "model-a": _api_error(403, "PERMISSION_DENIED", "API key not valid"),
            "model-b": _response("too late"),
        }
    )

    with pytest.raises(AllModelsExhausted) as excinfo:
        resume_analyzer.generate_with_fallback(
            _FakeClient(models),
            "PROMPT",
            ["model-a", "model-b"],
            deadline_seconds=10,
            clock=lambda: next(ticks),
        )

    assert models.calls == ["model-a"]
    assert "deadline of 10s exceeded before trying model-b" in str(excinfo.value)
    assert "API key not valid" in str(excinfo.value)
    assert "API key not valid" in str(excinfo.value.last_error.__cause__)


def test_run_analysis_is_noop_without_content_or_key() -> None:
    def factory(api_key, timeout):  # noqa: ARG001
        raise AssertionError("No client should be created.")

    guard = resume_analyzer.AnalysisGuard()
    settings = AnalyzerSettings()
    assert resume_analyzer.run_analysis("key", "", settings, guard, factory) is None
    assert resume_analyzer.run_analysis("key", "   \n", settings, guard, factory) is None
    assert resume_analyzer.run_analysis("", "resume", settings, guard, factory) is None
    assert resume_analyzer.run_analysis(None, "resume", settings, guard, factory) is None


def test_run_analysis_builds_prompt_and_strips_fence() -> None:
    models = _FakeModels({"model-x": _response("```markdown\n# Resume Analysis\n```")})
    created: list[tuple[str, float]] = []

    def factory(api_key, timeout):
        created.append((api_key, timeout))
        return _FakeClient(models)

    settings = AnalyzerSettings(models=("model-x",), request_timeout_seconds=15)
    report = resume_analyzer.run_analysis(
        " key ", "  Jane Doe, Data Engineer  ", settings, resume_analyzer.AnalysisGuard(), factory
    )

    assert report == "# Resume Analysis"
    assert created == [("key", 15)]
    assert "Jane Doe, Data Engineer" in models.prompts[0]
    assert "## ✅ Strengths" in models.prompts[0]


def test_second_analysis_is_rejected_while_first_is_outstanding() -> None:
    started = threading.Event()
    release = threading.Event()
    results: list[str] = []

    class _BlockingModels(_FakeModels):
        def generate_content(self, model, contents):
            started.set()
            release.wait(timeout=5)
            return super().generate_content(model, contents)

    models = _BlockingModels({"model-x": _response("first report")})
    guard = resume_analyzer.AnalysisGuard()
    settings = AnalyzerSettings(models=("model-x",))

    def first() -> None:
        results.append(
            resume_analyzer.run_analysis("key", "resume", settings, guard, lambda k, t: _FakeClient(models))
        )

    worker = threading.Thread(target=first)
    worker.start()
    assert started.wait(timeout=5)
    assert guard.busy

    def second_factory(api_key, timeout):  # noqa: ARG001
        raise AssertionError("Second analysis must not reach the service.")

    with pytest.raises(AnalysisInProgress):
        resume_analyzer.run_analysis("key", "resume", settings, guard, second_factory)

    release.set()
    worker.join(timeout=5)
    assert results == ["first report"]
    assert models.calls == ["model-x"]
    assert not guard.busy


def test_guard_released_after_failure() -> None:
    models = _FakeModels({"model-x": _api_error(404, "NOT_FOUND", "not found")})
    guard = resume_analyzer.AnalysisGuard()
    settings = AnalyzerSettings(models=("model-x",))

    with pytest.raises(AllModelsExhausted):
        resume_analyzer.run_analysis("key", "resume", settings, guard, lambda k, t: _FakeClient(models))
    assert not guard.busy


def test_create_client_passes_timeout_in_milliseconds(monkeypatch) -> None:
    captured: dict = {}

    class _RecordingClient:
        def __init__(self, **kwargs):
            captured.update(kwargs)

    monkeypatch.setattr(resume_analyzer.genai, "Client", _RecordingClient)

    resume_analyzer.create_client("secret", 12.5)
    assert captured["api_key"] == "secret"
    assert captured["http_options"].timeout == 12500
