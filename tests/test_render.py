"""Tests for the terminal renderer."""

import io

import pytest

from ata.conversation.transcript import TurnStatus
from ata.render import NewlineFixer, TerminalRenderer


class TestNewlineFixer:
    def test_plain_text_passes_through(self):
        assert NewlineFixer().feed("Hello") == "Hello"

    def test_split_escape_becomes_newline(self):
        fixer = NewlineFixer()
        assert fixer.feed("one\\") == ""
        assert fixer.feed("ntwo") == "one\ntwo"

    def test_flush_returns_pending(self):
        fixer = NewlineFixer()
        fixer.feed("trailing\\")
        assert fixer.flush() == "trailing\\"
        assert fixer.flush() == ""


class TestTerminalRenderer:
    def _renderer(self):
        out, err = io.StringIO(), io.StringIO()
        return TerminalRenderer(out=out, err=err), out, err

    def test_fragments_go_to_stdout(self):
        renderer, out, err = self._renderer()
        renderer.on_fragment("Hel")
        renderer.on_fragment("lo!")
        renderer.on_turn_finalized(TurnStatus.COMPLETE)

        assert out.getvalue() == "Hello!\n"
        assert "Response:" not in err.getvalue()

    @pytest.mark.parametrize("status,marker", [
        (TurnStatus.CANCELLED, "[cancelled]"),
        (TurnStatus.FAILED, "[incomplete: request failed]"),
    ])
    def test_status_markers_on_stderr(self, status, marker):
        renderer, out, err = self._renderer()
        renderer.on_fragment("Hel")
        renderer.on_turn_finalized(status)

        assert out.getvalue() == "Hel\n"
        assert marker in err.getvalue()

    def test_empty_cancelled_turn_writes_no_newline(self):
        renderer, out, err = self._renderer()
        renderer.on_turn_finalized(TurnStatus.CANCELLED)
        assert out.getvalue() == ""
        assert "[cancelled]" in err.getvalue()

    def test_print_error(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "1")
        renderer, _, err = self._renderer()
        renderer.print_error("boom")
        assert err.getvalue() == "error: boom\n"
