from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from intake import main as cli
from intake.schemas.runs import PipelineRunResult


def _write_sources(tmp_path: Path, payload: object) -> Path:
    path = tmp_path / "sources.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_load_source_configs_fills_defaults(tmp_path: Path) -> None:
    path = _write_sources(
        tmp_path,
        {"sources": [{"url": " https://feeds.example.org/grants.json ", "category": "funding", "items_key": "data"}]},
    )

    [config] = cli.load_source_configs(path)

    assert config == {
        "name": "https://feeds.example.org/grants.json",
        "url": "https://feeds.example.org/grants.json",
        "category": "funding",
        "items_key": "data",
        "headers": {},
    }


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"sources": "nope"}, "expected a list"),
        (["not-an-object"], "is not an object"),
        ([{"name": "missing-url"}], "has no url"),
        ([{"url": "https://x.example", "category": "podcast"}], "unknown category"),
    ],
)
def test_load_source_configs_rejects_bad_files(tmp_path: Path, payload: object, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        cli.load_source_configs(_write_sources(tmp_path, payload))


def _result(status: str) -> PipelineRunResult:
    now = datetime.now(timezone.utc)
    return PipelineRunResult(status=status, stage="persisting", started_at=now, finished_at=now, inserted=3)


def test_main_prints_result_and_exits_nonzero_on_failed_run(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    async def fake_run_pipeline(sources_path, store_path, settings) -> PipelineRunResult:
        assert store_path == tmp_path / "store.jsonl"
        return _result("failed")

    monkeypatch.setattr(cli, "run_pipeline", fake_run_pipeline)

    exit_code = cli.main(["run", "--sources", str(tmp_path / "sources.json"), "--store", str(tmp_path / "store.jsonl")])

    assert exit_code == 1
    assert json.loads(capsys.readouterr().out)["inserted"] == 3


def test_main_exits_zero_on_completed_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_run_pipeline(sources_path, store_path, settings) -> PipelineRunResult:
        return _result("completed")

    monkeypatch.setattr(cli, "run_pipeline", fake_run_pipeline)

    assert cli.main(["run", "--sources", str(tmp_path / "sources.json")]) == 0


def test_main_reports_unreadable_sources_file(tmp_path: Path) -> None:
    assert cli.main(["run", "--sources", str(tmp_path / "missing.json")]) == 2
