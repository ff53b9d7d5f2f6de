from assistant.services.command_parser import COMMAND_PREFIX, TOGGLE_PREFIX, ParsedCommand, parse_command


class TestParseCommand:
    def test_plain_text_is_not_a_command(self):
        assert parse_command("bom dia") is None

    def test_empty_and_none(self):
        assert parse_command("") is None
        assert parse_command(None) is None

    def test_bare_prefix_is_not_a_command(self):
        assert parse_command("/") is None
        assert parse_command("//   ") is None

    def test_command_with_args(self):
        assert parse_command("/curso  como  entregar o projeto ") == ParsedCommand(
            prefix=COMMAND_PREFIX, name="curso", args="como entregar o projeto"
        )

    def test_toggle_prefix_wins_over_single_slash(self):
        command = parse_command("//apoioaluno")
        assert command.prefix == TOGGLE_PREFIX
        assert command.name == "apoioaluno"
        assert command.args == ""

    def test_name_is_lowercased(self):
        assert parse_command("/Historico").name == "historico"
