"""
Scripts: a shell invocation plus a templated body.

The body uses ``string.Template`` placeholders (``$name``, ``${name}``,
``$$`` for a literal dollar sign) and is rendered against a mapping or any
object with attributes (e.g. a dataclass) just before execution.

Example:
    script = Script("disk-usage", "bash", "du -sh ${path}\\n")
    script.command()                 # "bash -s <<'REXEC_SCRIPT'\\n"
    script.new_reader({"path": "/var/log"}).read()
    # b"du -sh /var/log\\nREXEC_SCRIPT\\n"

A Script never raises on construction; a template or shell problem is kept
in ``script.error`` and reported when the script is used.
"""

from __future__ import annotations

import io
from string import Template
from typing import Any, BinaryIO, Mapping, Optional

# Here-document delimiter; quoted in command() so the remote shell does not
# expand anything inside the body a second time.
HEREDOC_MARKER = "REXEC_SCRIPT"

_SHELLS = {
    "bash": "bash -s",
    "sh": "sh -s",
}


def _template_error(template: Template) -> Optional[str]:
    """Return a description of the first invalid placeholder, or None."""
    for match in template.pattern.finditer(template.template):
        if match.group("invalid") is not None:
            start = match.start("invalid")
            line = template.template.count("\n", 0, start) + 1
            return f"invalid placeholder at line {line}, offset {start}"
    return None


def _as_mapping(arguments: Any) -> Mapping[str, Any]:
    if arguments is None:
        return {}
    if isinstance(arguments, Mapping):
        return arguments
    if hasattr(arguments, "__dict__"):
        return vars(arguments)
    raise TypeError(f"arguments must be a mapping or an object with attributes, got {type(arguments).__name__}")


class Script:
    """A named script for a given shell.

    Args:
        name: Script name, used in error messages
        shell: "bash" or "sh"
        code: Script body template
    """

    def __init__(self, name: str, shell: str = "bash", code: str = ""):
        self.name = name
        self.shell = shell
        self.code = code
        self._template = Template(code)
        self.error: Optional[ValueError] = None

        if shell not in _SHELLS:
            self.error = ValueError(f"script {name!r}: unsupported shell {shell!r}")
        else:
            problem = _template_error(self._template)
            if problem is not None:
                self.error = ValueError(f"script {name!r}: {problem}")

    @property
    def ok(self) -> bool:
        return self.error is None

    def command(self) -> str:
        """Invocation prefix that feeds the rendered body to the shell on stdin."""
        return f"{_SHELLS.get(self.shell, self.shell)} <<'{HEREDOC_MARKER}'\n"

    def render(self, arguments: Any = None) -> str:
        """Render the body against arguments.

        Raises:
            ValueError: If the script failed to parse
            KeyError: If a placeholder has no matching argument
            TypeError: If arguments is neither a mapping nor an object
        """
        if self.error is not None:
            raise self.error
        body = self._template.substitute(_as_mapping(arguments))
        if not body.endswith("\n"):
            body += "\n"
        return f"{body}{HEREDOC_MARKER}\n"

    def new_reader(self, arguments: Any = None) -> BinaryIO:
        """Render the body and return it as a byte stream."""
        return io.BytesIO(self.render(arguments).encode())

    def __repr__(self) -> str:
        state = "ok" if self.ok else "invalid"
        return f"Script({self.name!r}, {self.shell!r}, {state})"


__all__ = ["HEREDOC_MARKER", "Script"]
