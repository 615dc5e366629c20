"""Argument escaping tests."""

from __future__ import annotations

import shlex

import pytest

from qlood.runtime.escaping import compose_command, escape_arg


class TestEscapeArg:
    """escape_arg() quoting rules."""

    @pytest.mark.parametrize("token", ["hello", "--print", "path/to/file.txt", "a=b", "x,y", "100%"])
    def test_plain_tokens_unchanged(self, token: str):
        assert escape_arg(token) == token

    @pytest.mark.parametrize(
        "token",
        ["hello world", "a|b", "(x)", "[1]", "{k}", "a;b", 'say "hi"', "back\\slash",
         "$HOME", "`id`", "<in>", "a&b", "*.py", "why?", "tab\there", "new\nline"],
    )
    def test_special_tokens_quoted(self, token: str):
        escaped = escape_arg(token)
        assert escaped.startswith("'") and escaped.endswith("'")

    def test_single_quote_uses_close_reopen(self):
        assert escape_arg("it's") == "'it'\"'\"'s'"

    def test_empty_token_quoted(self):
        assert escape_arg("") == "''"

    def test_empty_token_keeps_its_position(self):
        command_line = compose_command("auggie", ["--print", "", "--compact"])
        assert shlex.split(command_line) == ["auggie", "--print", "", "--compact"]

    def test_escaping_is_not_idempotent(self):
        once = escape_arg("a b")
        assert escape_arg(once) != once


class TestComposeCommand:
    """compose_command() round-trips through a POSIX shell tokenizer."""

    @pytest.mark.parametrize(
        "args",
        [
            ["--print", "What's in $HOME; rm -rf / && echo `id`"],
            ["--mcp-config", "/tmp/with space/cfg.json", "--compact", "prompt"],
            ["multi\nline\tprompt", "'quoted'", '"double"', "a\\b"],
            ["plain", "tokens", "only"],
        ],
    )
    def test_round_trip(self, args: list[str]):
        command_line = compose_command("auggie", args)
        assert shlex.split(command_line) == ["auggie", *args]

    def test_no_args(self):
        assert compose_command("auggie") == "auggie"
