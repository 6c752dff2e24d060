"""
Tests for the Punto Settlement command line interface (src/cli.py)
"""

import json

import pytest

import cli
from settlement_exceptions import AmbiguousPayoutError, ExternalServiceError

from conftest import TREASURY


@pytest.fixture(autouse=True)
def quiet_bootstrap(monkeypatch):
    """Keep the CLI away from .env files and the root logger."""
    monkeypatch.setattr(cli, "load_dotenv", lambda *a, **kw: False)
    monkeypatch.setattr("monitoring.configure_logging", lambda **kw: None)
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("USE_MOCK_CHAIN", "true")
    monkeypatch.setenv("TREASURY_SIGNER", TREASURY)
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture
def wired(monkeypatch, engine):
    """Make the CLI operate on the test engine."""
    monkeypatch.setattr("engine.build_engine", lambda settings: engine)
    return engine


class TestParsing:
    def test_no_command(self, capsys):
        assert cli.main([]) == 1
        assert "usage: punto" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--version"])
        assert exc_info.value.code == 0
        assert cli.__version__ in capsys.readouterr().out

    def test_payout_requires_issue(self):
        with pytest.raises(SystemExit):
            cli.main(["payout"])


class TestInfoAndCheck:
    def test_info(self, capsys, monkeypatch):
        monkeypatch.setenv("PUBLISH_BUFFER_PERCENT", "15")

        assert cli.main(["info"]) == 0

        out = capsys.readouterr().out
        assert "STORAGE_BACKEND: memory" in out
        assert "CHAIN: mock" in out
        assert "PUBLISH_BUFFER_PERCENT: 15" in out

    def test_check_with_mock_chain(self, capsys, monkeypatch):
        monkeypatch.setenv("PUNTO_API_KEY", "k")

        assert cli.main(["check"]) == 0

        out = capsys.readouterr().out
        assert "Storage (MemoryStorage): OK" in out
        assert "SKIP (USE_MOCK_CHAIN)" in out
        assert "All checks passed!" in out

    def test_check_fails_on_storage(self, capsys, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "postgresql")

        assert cli.main(["check"]) == 1
        assert "Storage: FAIL" in capsys.readouterr().out


class TestPayoutCommand:
    def test_pays_queue(self, capsys, wired, issue, make_topic, submit, editor_a):
        for amount in (5000, 2500):
            wired.submissions.review(submit(make_topic(bounty_amount=amount)).id, "ACCEPTED", editor_a.id)

        assert cli.main(["payout", issue.id, "--yes"]) == 0

        out = capsys.readouterr().out
        assert "Pay 50.00 USDC" in out
        assert "Paid 2 payment(s), 75.00 USDC; stopped: queue_empty" in out
        assert wired.ledger.list_pending(issue.id) == []

    def test_operator_declines(self, capsys, wired, issue, make_topic, submit, editor_a, monkeypatch):
        wired.submissions.review(submit(make_topic()).id, "ACCEPTED", editor_a.id)
        monkeypatch.setattr("builtins.input", lambda prompt: "n")

        assert cli.main(["payout", issue.id]) == 0

        assert "stopped: declined" in capsys.readouterr().out
        assert len(wired.ledger.list_pending(issue.id)) == 1

    def test_max(self, capsys, wired, issue, make_topic, submit, editor_a):
        for _ in range(2):
            wired.submissions.review(submit(make_topic()).id, "ACCEPTED", editor_a.id)

        assert cli.main(["payout", issue.id, "--yes", "--max", "1"]) == 0
        assert "stopped: max_payments" in capsys.readouterr().out

    def test_unknown_issue(self, capsys, wired):
        assert cli.main(["payout", "iss_missing", "--yes"]) == 1
        assert "Error (not_found)" in capsys.readouterr().err

    def test_run_error_exit_code(self, capsys, wired, chain, issue, make_topic, submit, editor_a):
        wired.submissions.review(submit(make_topic()).id, "ACCEPTED", editor_a.id)
        chain.reject_next()

        assert cli.main(["payout", issue.id, "--yes"]) == 1
        captured = capsys.readouterr()
        assert "stopped: error" in captured.out
        assert "Error:" in captured.err


class TestResolveCommand:
    @pytest.fixture
    def attempt_id(self, wired, chain, issue, make_topic, submit, editor_a):
        wired.submissions.review(submit(make_topic()).id, "ACCEPTED", editor_a.id)
        chain.drop_next_send()
        with pytest.raises(AmbiguousPayoutError) as exc_info:
            wired.process_next_payout(issue.id)
        return exc_info.value.details["attempt_id"]

    def test_requires_abandon_without_hash(self, capsys, attempt_id):
        assert cli.main(["resolve", attempt_id]) == 1
        assert "Error (ambiguous_payout)" in capsys.readouterr().err

    def test_abandon(self, capsys, attempt_id):
        assert cli.main(["resolve", attempt_id, "--abandon"]) == 0
        assert f"Attempt {attempt_id}: REVERTED" in capsys.readouterr().out

    def test_unknown_attempt(self, capsys, wired):
        assert cli.main(["resolve", "att_missing"]) == 1
        assert "Error (not_found)" in capsys.readouterr().err


class TestReconcileCommand:
    def test_clean_json(self, capsys):
        assert cli.main(["reconcile", "--json"]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["is_clean"] is True

    def test_findings(self, capsys, wired, make_topic, submit, editor_a, monkeypatch):
        def broken_create(_submission):
            raise ExternalServiceError("store down", service="store")

        submission = submit(make_topic())
        with monkeypatch.context() as m:
            m.setattr(wired.ledger, "create", broken_create)
            wired.submissions.review(submission.id, "ACCEPTED", editor_a.id)

        assert cli.main(["reconcile"]) == 1
        out = capsys.readouterr().out
        assert "Accepted without payment: 1" in out
        assert submission.id in out

        assert cli.main(["reconcile", "--repair"]) == 0
        assert "Payments created: 1" in capsys.readouterr().out
