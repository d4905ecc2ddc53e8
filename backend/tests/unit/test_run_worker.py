"""Tests for the standalone worker entry point."""

from unittest.mock import patch

import pytest

from scripts.run_worker import build_parser, main


class FakeRunner:
    def __init__(self, pending=3):
        self.pending = pending
        self.calls = []

    def enqueue_dispatch(self):
        self.calls.append("dispatch")

    def run_pending(self):
        self.calls.append("run_pending")
        return self.pending

    def run_forever(self, stop_event):
        self.calls.append("run_forever")

    def close(self):
        self.calls.append("close")


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch("scripts.run_worker.setup_logging"):
        yield


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.once is False
    assert args.dispatch is False
    assert args.concurrency is None
    assert args.poll_interval is None


def test_once_drains_pending(capsys):
    runner = FakeRunner(pending=2)
    assert main(["--once"], runner=runner) == 0
    assert runner.calls == ["run_pending", "close"]
    assert "Ran 2 job(s)" in capsys.readouterr().out


def test_once_with_dispatch(capsys):
    runner = FakeRunner(pending=0)
    assert main(["--once", "--dispatch"], runner=runner) == 0
    assert runner.calls == ["dispatch", "run_pending", "close"]
    assert "Ran 0 job(s)" in capsys.readouterr().out


def test_rejects_zero_concurrency(capsys):
    runner = FakeRunner()
    assert main(["--concurrency", "0"], runner=runner) == 2
    assert runner.calls == []
    assert "--concurrency" in capsys.readouterr().err


def test_continuous_installs_signal_handlers():
    runner = FakeRunner()
    with patch("scripts.run_worker.install_signal_handlers") as mock_install:
        assert main([], runner=runner) == 0
    mock_install.assert_called_once()
    assert runner.calls == ["run_forever"]
