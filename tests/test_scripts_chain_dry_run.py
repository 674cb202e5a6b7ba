import json

import pytest

from scripts.chain_dry_run import main


def test_dry_run_prints_rotated_chains(capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SCHED_MODEL_CHAIN", raising=False)

    assert main(["--dummy", "--rounds", "2"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "offset=0: dummy:dummy-a -> dummy:dummy-b -> dummy_fallback:dummy-c",
        "offset=1: dummy:dummy-a -> dummy:dummy-b -> dummy_fallback:dummy-c",
    ]


def test_dry_run_send_runs_one_completion(capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SCHED_MODEL_CHAIN", raising=False)

    assert main(["--dummy", "--rounds", "0", "--send", "hello"]) == 0

    result = json.loads(capsys.readouterr().out)
    assert result["content"] == "dummy:hello"
    assert result["provider"] == "dummy"
