"""Tests for the launcher's failure path."""

import pytest

import dm_dashboard.main
import run_api


def test_startup_failure_exits_with_hints(monkeypatch, capsys):
    def broken_run():
        raise OSError("address already in use")

    monkeypatch.setattr(dm_dashboard.main, "run", broken_run)

    with pytest.raises(SystemExit) as exc:
        run_api.main()

    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "failed to start" in err
    assert "MEMBER_PAGE_SIZE" in err
    assert "SEND_DELAY_MAX_MS" in err
