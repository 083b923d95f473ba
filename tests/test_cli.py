"""Tests for CLI commands."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from llm_consensus.cli.main import app
from llm_consensus.engine.planner import PlannerConfig
from llm_consensus.protocol.types import (
    PipelineStage,
    PlanningMode,
    Session,
    SessionConfig,
    SessionStatus,
    StageResult,
    VotingMethod,
    VotingResult,
)
from llm_consensus.storage import SQLiteSessionRepository

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolate(tmp_path, monkeypatch):
    """Point HOME at a temp dir and undo the logging setup done by 'ask'."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setattr(SQLiteSessionRepository, "DEFAULT_DB_PATH", tmp_path / "sessions.db")
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _session(status: SessionStatus = SessionStatus.COMPLETED) -> Session:
    now = datetime.now(timezone.utc)
    voting = VotingResult(
        method=VotingMethod.MAJORITY,
        winner="yes",
        breakdown={"yes": 2, "no": 1},
        confidence_avg=0.9,
        consensus_reached=True,
    )
    return Session(
        question="Is 7 prime?",
        config=SessionConfig(),
        members=[],
        stages=[
            StageResult(
                stage=PipelineStage.VOTING, voting_result=voting, start_time=now, end_time=now
            )
        ],
        status=status,
        final_answer="Seven is prime." if status == SessionStatus.COMPLETED else None,
        final_confidence=0.9 if status == SessionStatus.COMPLETED else None,
        error=None if status == SessionStatus.COMPLETED else "All members failed",
    )


class FakeCouncil:
    """Stands in for Council; records how the CLI built it."""

    instances: list[FakeCouncil] = []
    session: Session | None = None
    error: Exception | None = None

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.questions: list[str] = []
        FakeCouncil.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def run(self, question):
        self.questions.append(question)
        if FakeCouncil.error is not None:
            raise FakeCouncil.error
        return FakeCouncil.session


@pytest.fixture
def fake_council():
    FakeCouncil.instances = []
    FakeCouncil.session = _session()
    FakeCouncil.error = None
    with patch("llm_consensus.Council", FakeCouncil):
        yield FakeCouncil


class TestCLIHelp:
    """Tests for CLI help commands."""

    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "deliberate" in result.stdout

    def test_ask_help(self):
        result = runner.invoke(app, ["ask", "--help"])
        assert result.exit_code == 0
        assert "--preset" in result.stdout

    def test_version(self):
        from llm_consensus import __version__

        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert f"LLM Consensus v{__version__}" in result.stdout


class TestCLICatalogue:
    """Tests for the presets and models listings."""

    def test_presets(self):
        result = runner.invoke(app, ["presets"])
        assert result.exit_code == 0
        assert "Council Presets" in result.stdout
        for name in ("small", "standard", "reasoning", "diverse"):
            assert name in result.stdout

    def test_models(self, monkeypatch):
        monkeypatch.setenv("CONSENSUS_PROVIDER", "mock")

        result = runner.invoke(app, ["models"])

        assert result.exit_code == 0
        assert "provider: mock" in result.stdout
        assert "o3" in result.stdout


class TestCLIConfig:
    """Tests for config command."""

    def test_show_without_file(self):
        result = runner.invoke(app, ["config", "--show"])
        assert result.exit_code == 0
        assert "No configuration file found" in result.stdout

    def test_init_then_show(self, tmp_path):
        result = runner.invoke(app, ["config", "--init"])
        assert result.exit_code == 0

        config_file = tmp_path / ".config" / "llm-consensus" / "config.yaml"
        assert config_file.exists()
        assert yaml.safe_load(config_file.read_text())["defaults"]["mode"] == "hybrid"

        result = runner.invoke(app, ["config", "--show"])
        assert "defaults:" in result.stdout

    def test_no_flags(self):
        result = runner.invoke(app, ["config"])
        assert "Usage: consensus config" in result.stdout


class TestCLIPlan:
    """Tests for plan command."""

    def test_static_plan_json(self):
        result = runner.invoke(
            app, ["plan", "Should we adopt a four-day work week?", "--mode", "static", "--json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["meta"]["planning_mode"] == "static"
        assert data["council"]["members"]

    def test_static_plan_table(self):
        result = runner.invoke(app, ["plan", "What is 2 + 2?", "-m", "static"])

        assert result.exit_code == 0
        assert "Council Plan" in result.stdout
        assert "Members" in result.stdout

    def test_invalid_mode(self):
        result = runner.invoke(app, ["plan", "Anything?", "--mode", "psychic"])
        assert result.exit_code != 0


class TestCLIAsk:
    """Tests for ask command."""

    def test_ask_json(self, fake_council):
        result = runner.invoke(app, ["ask", "Is 7 prime?", "--preset", "small", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "completed"
        assert data["final_answer"] == "Seven is prime."
        assert "traces" not in data

        council = fake_council.instances[0]
        assert council.questions == ["Is 7 prime?"]
        assert council.kwargs["preset"] == "small"
        assert council.kwargs["repository"] is None
        assert council.kwargs["planner_config"] == PlannerConfig(mode=PlanningMode.HYBRID)

    def test_ask_panel(self, fake_council):
        result = runner.invoke(app, ["ask", "Is 7 prime?", "--mode", "static"])

        assert result.exit_code == 0
        assert "Council Result: COMPLETED" in result.stdout
        assert "Seven is prime." in result.stdout
        assert fake_council.instances[0].kwargs["preset"] is None

    def test_ask_uses_config_defaults(self, fake_council, tmp_path):
        config_file = tmp_path / ".config" / "llm-consensus" / "config.yaml"
        config_file.parent.mkdir(parents=True)
        config_file.write_text(
            yaml.safe_dump({"defaults": {"preset": "reasoning", "timeout_ms": 5000, "save": True}})
        )

        result = runner.invoke(app, ["ask", "Is 7 prime?", "--json"])

        assert result.exit_code == 0
        kwargs = fake_council.instances[0].kwargs
        assert kwargs["preset"] == "reasoning"
        assert kwargs["session_config"] == {"timeout_ms": 5000}
        assert isinstance(kwargs["repository"], SQLiteSessionRepository)

    def test_failed_session_exits_nonzero(self, fake_council):
        fake_council.session = _session(SessionStatus.FAILED)

        result = runner.invoke(app, ["ask", "Is 7 prime?", "--preset", "small"])

        assert result.exit_code == 1
        assert "All members failed" in result.stdout

    def test_error_json(self, fake_council):
        fake_council.error = RuntimeError("no providers")

        result = runner.invoke(app, ["ask", "Is 7 prime?", "--json"])

        assert result.exit_code == 1
        assert json.loads(result.stdout) == {"error": "no providers"}


class TestCLISessionsAndDoctor:
    """Tests for sessions and doctor commands."""

    def test_no_saved_sessions(self):
        result = runner.invoke(app, ["sessions"])
        assert result.exit_code == 0
        assert "No saved sessions" in result.stdout

    def test_doctor_with_no_providers(self):
        with patch("llm_consensus.providers.registry.get_registry") as mock_reg:
            mock_registry = MagicMock()
            mock_registry.list_providers.return_value = []
            mock_reg.return_value = mock_registry

            result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "No providers registered" in result.stdout

    def test_doctor_checks_registered_providers(self, mock_registry, monkeypatch):
        monkeypatch.setenv("CONSENSUS_PROVIDER", "mock")
        monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)
        monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "Provider Status" in result.stdout
        assert "mock" in result.stdout
