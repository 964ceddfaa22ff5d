"""Tests for app/confirm.py - operator prompts."""

import io
from unittest.mock import Mock

import pytest

from pi_nvme_boot.app.confirm import (
    InteractiveConfirmer,
    NonInteractiveConfirmer,
    select_confirmer,
)


class TestInteractiveConfirmer:
    @pytest.mark.parametrize("answer", ["y", "Y", "yes", "YES", " yes "])
    def test_yes_answers(self, answer):
        confirmer = InteractiveConfirmer(input_func=Mock(return_value=answer))
        assert confirmer.confirm("Erase?") is True

    @pytest.mark.parametrize("answer", ["", "n", "no", "yep", "y es", "sure"])
    def test_everything_else_is_no(self, answer):
        confirmer = InteractiveConfirmer(input_func=Mock(return_value=answer))
        assert confirmer.confirm("Erase?") is False

    def test_prompt_shows_default(self):
        """Test the prompt marks no as the default."""
        input_func = Mock(return_value="n")
        InteractiveConfirmer(input_func=input_func).confirm("Erase?")
        input_func.assert_called_once_with("Erase? [y/N]: ")

    def test_end_of_input_is_no(self):
        """Test a closed stdin answers no instead of raising."""
        confirmer = InteractiveConfirmer(input_func=Mock(side_effect=EOFError))
        assert confirmer.confirm("Erase?") is False


class TestNonInteractiveConfirmer:
    def test_default_answers_no(self):
        """Test an unattended run without --yes never proceeds."""
        confirmer = NonInteractiveConfirmer()
        assert confirmer.confirm("Erase?") is False
        assert confirmer.confirm("Reboot now?", assumable=False) is False

    def test_assume_yes_answers_assumable_questions(self):
        confirmer = NonInteractiveConfirmer(assume_yes=True)
        assert confirmer.confirm("Erase?") is True

    def test_assume_yes_never_answers_power_prompts(self):
        """Test --yes does not reboot or power off the machine."""
        confirmer = NonInteractiveConfirmer(assume_yes=True)
        assert confirmer.confirm("Shutdown now?", assumable=False) is False


class TestSelectConfirmer:
    def test_tty_is_interactive(self):
        stdin = Mock()
        stdin.isatty.return_value = True
        assert isinstance(select_confirmer(False, stdin), InteractiveConfirmer)

    def test_no_tty_is_non_interactive(self):
        confirmer = select_confirmer(False, io.StringIO(""))
        assert isinstance(confirmer, NonInteractiveConfirmer)
        assert confirmer.assume_yes is False

    def test_assume_yes_wins_over_tty(self):
        stdin = Mock()
        stdin.isatty.return_value = True
        confirmer = select_confirmer(True, stdin)
        assert isinstance(confirmer, NonInteractiveConfirmer)
        assert confirmer.assume_yes is True
