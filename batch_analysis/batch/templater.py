"""Command templating for analysis scripts.

Scripts declare an executable command containing ``{placeholder}`` tokens.
Before submission the tokens are replaced with concrete paths and recording
metadata. The vocabulary is fixed; anything else is rejected.

Usage:
    from batch_analysis.batch.templater import format_command

    command = format_command(
        "mkdir -p {output_dir}\\ncp {source} {output_dir}/in",
        {"source": "/a/in.wav", "output_dir": "/tmp/out"},
    )
"""

import re
from datetime import date, datetime
from typing import Any, Mapping, Optional

from batch_analysis.errors import ValidationError

SOURCE_DIR = "source_dir"
CONFIG_DIR = "config_dir"
OUTPUT_DIR = "output_dir"
TEMP_DIR = "temp_dir"
SOURCE_BASENAME = "source_basename"
CONFIG_BASENAME = "config_basename"
SOURCE = "source"
CONFIG = "config"
LATITUDE = "latitude"
LONGITUDE = "longitude"
TIMESTAMP = "timestamp"
ID = "id"
UUID = "uuid"

ALL = (
    SOURCE_DIR,
    CONFIG_DIR,
    OUTPUT_DIR,
    TEMP_DIR,
    SOURCE_BASENAME,
    CONFIG_BASENAME,
    SOURCE,
    CONFIG,
    LATITUDE,
    LONGITUDE,
    TIMESTAMP,
    ID,
    UUID,
)

CONFIG_PLACEHOLDERS = (CONFIG_DIR, CONFIG_BASENAME, CONFIG)

# A template must reference at least one member of each group
REQUIRED_GROUPS: tuple[tuple[str, ...], ...] = (
    (SOURCE_DIR, SOURCE),
    (OUTPUT_DIR,),
)

TOKEN_PATTERN = re.compile(r"\{([^{}]*)\}")

# Control characters other than tab and newline break the generated bash script
UNSAFE_CHARACTERS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f\u200b-\u200f\u2028-\u202e\ufeff]")


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def format_command(template: str, values: Mapping[str, Any]) -> str:
    """Substitute placeholders in a command template.

    Args:
        template: Command text containing ``{name}`` tokens
        values: Value for every token used in the template

    Returns:
        The command with all tokens replaced

    Raises:
        ValidationError: On an unknown token, a token with no value, or a
            template that misses one of the required placeholder groups
    """
    if template is None:
        raise ValidationError("command template must not be empty")

    used: set[str] = set()

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in ALL:
            raise ValidationError(f"Invalid placeholder '{{{name}}}' in command")
        if name not in values:
            raise ValidationError(f"Missing value for placeholder '{name}'")
        used.add(name)
        return _render(values[name])

    result = TOKEN_PATTERN.sub(replace, template)

    for group in REQUIRED_GROUPS:
        if not used.intersection(group):
            options = " or ".join(f"{{{name}}}" for name in group)
            raise ValidationError(f"Command must include {options}")

    return result


def validate_executable_command(
    command: Optional[str],
    has_settings: bool = True,
) -> list[str]:
    """Check a script's command when the script is defined.

    Returns a list of problems; empty means the command is usable.
    """
    if not command:
        return ["executable command must not be blank"]

    problems: list[str] = []
    try:
        format_command(command, {name: "value" for name in ALL})
    except ValidationError as e:
        problems.append(str(e))

    if UNSAFE_CHARACTERS.search(command):
        problems.append("executable command contains unsafe characters")

    if not has_settings:
        pattern = "|".join(re.escape(f"{{{name}}}") for name in CONFIG_PLACEHOLDERS)
        if re.search(pattern, command):
            names = ", ".join(f"{{{name}}}" for name in CONFIG_PLACEHOLDERS)
            problems.append(
                f"executable command contains one of {names} but no settings are provided"
            )

    return problems
