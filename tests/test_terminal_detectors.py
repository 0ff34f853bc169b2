"""Tests for the terminal output detectors, driven without processes or clocks."""

from __future__ import annotations

from plan_orchestrator.constants import (
    ACCEPT_MODE_ON_MARKER,
    ACCEPT_MODE_STATUS_GLYPH,
    ACCEPT_MODE_TOGGLE_KEYS,
    TRUST_CONFIRM_KEYS,
    TRUST_PROMPT_PHRASE,
)
from plan_orchestrator.terminal.detectors import (
    AcceptModeDetector,
    SessionClearedDetector,
    StartupGate,
    TrustPromptDetector,
)


class TestTrustPromptDetector:
    def test_confirms_once_phrase_and_marker_arrive_in_split_chunks(self) -> None:
        detector = TrustPromptDetector(marker=".plan_orchestrator", idle_seconds=2.0)

        assert detector.feed("Do you trust /home/u/.plan_orch", 0.0) == []
        writes = detector.feed(f"estrator/plans?\n{TRUST_PROMPT_PHRASE}", 0.5)

        assert len(writes) == 1
        assert writes[0].data == TRUST_CONFIRM_KEYS
        assert detector.state == "matched"
        assert detector.confirmations == 1

    def test_does_not_confirm_for_foreign_directories(self) -> None:
        detector = TrustPromptDetector(marker=".plan_orchestrator")
        assert detector.feed(f"/home/u/other\n{TRUST_PROMPT_PHRASE}", 0.0) == []
        assert detector.confirmations == 0

    def test_buffer_expires_after_idle_deadline(self) -> None:
        detector = TrustPromptDetector(marker=".plan_orchestrator", idle_seconds=1.0)
        detector.feed("/x/.plan_orchestrator/plans", 0.0)

        assert detector.feed(TRUST_PROMPT_PHRASE, 5.0) == []
        assert detector.buffer == TRUST_PROMPT_PHRASE

    def test_matched_state_suppresses_duplicates_until_acknowledged(self) -> None:
        detector = TrustPromptDetector(marker="m")
        [write] = detector.feed(f"m {TRUST_PROMPT_PHRASE}", 0.0)

        assert detector.feed(f"m {TRUST_PROMPT_PHRASE}", 0.1) == []
        write.on_sent()
        assert detector.state == "idle"
        assert len(detector.feed(f"m {TRUST_PROMPT_PHRASE}", 0.2)) == 1
        assert detector.confirmations == 2


class TestAcceptModeDetector:
    def test_toggles_until_status_line_reports_accept_mode(self) -> None:
        detector = AcceptModeDetector(max_attempts=5)

        [toggle] = detector.feed(f"{ACCEPT_MODE_STATUS_GLYPH} default mode", 0.0)
        assert toggle.data == ACCEPT_MODE_TOGGLE_KEYS
        assert detector.feed(f"{ACCEPT_MODE_STATUS_GLYPH} plan mode", 0.1) == []

        toggle.on_sent()
        assert len(detector.feed(f"{ACCEPT_MODE_STATUS_GLYPH} plan mode", 0.2)) == 1
        assert detector.attempts == 2

        assert detector.feed(f"{ACCEPT_MODE_STATUS_GLYPH} {ACCEPT_MODE_ON_MARKER}", 0.3) == []
        assert detector.done

    def test_gives_up_after_max_attempts(self) -> None:
        detector = AcceptModeDetector(max_attempts=2)
        for _ in range(2):
            [toggle] = detector.feed(ACCEPT_MODE_STATUS_GLYPH, 0.0)
            toggle.on_sent()

        assert detector.feed(ACCEPT_MODE_STATUS_GLYPH, 0.0) == []
        assert detector.done
        assert detector.attempts == 2

    def test_ignores_output_without_status_glyph(self) -> None:
        assert AcceptModeDetector().feed("plain output", 0.0) == []


class TestStartupGate:
    def test_sends_command_once_prompt_is_seen(self) -> None:
        gate = StartupGate("claude --session-id x\n", username=None)

        assert gate.feed("Last login: today\n", 0.0) == []
        [write] = gate.feed("user@host ~ % ", 0.1)

        assert write.data == "claude --session-id x\n"
        assert gate.feed("user@host ~ % ", 0.2) == []

    def test_username_in_output_counts_as_ready(self) -> None:
        gate = StartupGate("cmd\n", username="alice")
        assert len(gate.feed("welcome alice", 0.0)) == 1

    def test_fallback_fires_only_when_gate_has_not(self) -> None:
        gate = StartupGate("cmd\n")
        [write] = gate.fallback()
        assert write.delay == 0.0
        assert gate.fallback() == []
        assert gate.feed("$ ", 0.0) == []


def test_session_cleared_detector() -> None:
    detector = SessionClearedDetector()
    assert detector.feed("⎿  (no content)", 0.0)
    assert not detector.feed("some content", 0.0)
