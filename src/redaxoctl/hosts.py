"""Idempotent management of the host name-resolution file.

Each instance contributes at most one line of the exact form
``127.0.0.1 <name>.local``. Matching is anchored to the full line so that an
entry for ``foo.local`` never matches ``foobar.local`` or ``foo.local.bak``.
"""
from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


class HostsFileError(RuntimeError):
    """Raised when the hosts file cannot be read or written."""


def entry_pattern(domain: str) -> re.Pattern[str]:
    """Return the anchored full-line pattern for *domain*."""
    return re.compile(rf"^127\.0\.0\.1[ \t]+{re.escape(domain)}[ \t]*$")


@dataclass(slots=True)
class HostsFile:
    """Read and rewrite a hosts file, optionally through a privileged writer.

    ``writer`` is an argv prefix receiving the file path as its last argument
    and the new content on stdin (``sudo tee`` by default in the configuration).
    An empty writer writes the file directly.
    """

    path: Path
    writer: Sequence[str] = field(default_factory=tuple)

    def read_lines(self) -> list[str]:
        """Return the file content as lines without trailing newlines."""
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise HostsFileError(f"Unable to read {self.path}: {exc}") from exc

    def has_entry(self, domain: str) -> bool:
        """Return ``True`` when an exact loopback entry exists for *domain*."""
        pattern = entry_pattern(domain)
        return any(pattern.match(line) for line in self.read_lines())

    def ensure_entry(self, domain: str) -> bool:
        """Guarantee exactly one ``127.0.0.1 <domain>`` line; return ``True`` if changed."""
        canonical = f"{LOOPBACK} {domain}"
        lines = self.read_lines()
        pattern = entry_pattern(domain)
        matches = [line for line in lines if pattern.match(line)]
        if matches == [canonical]:
            return False

        # Remove every existing exact match, then re-check before appending.
        remaining = [line for line in lines if not pattern.match(line)]
        if not any(pattern.match(line) for line in remaining):
            remaining.append(canonical)
        self._write(remaining)
        LOGGER.info("hosts entry ensured for %s in %s", domain, self.path)
        return True

    def remove_entry(self, domain: str) -> bool:
        """Remove the loopback entry for *domain*; return ``True`` if changed."""
        lines = self.read_lines()
        pattern = entry_pattern(domain)
        remaining = [line for line in lines if not pattern.match(line)]
        if len(remaining) == len(lines):
            return False
        self._write(remaining)
        LOGGER.info("hosts entry removed for %s from %s", domain, self.path)
        return True

    def _write(self, lines: list[str]) -> None:
        content = "".join(f"{line}\n" for line in lines)
        if not self.writer:
            try:
                self.path.write_text(content, encoding="utf-8")
            except OSError as exc:
                raise HostsFileError(f"Unable to write {self.path}: {exc}") from exc
            return

        args = [*self.writer, str(self.path)]
        try:
            result = subprocess.run(  # noqa: S603, S607
                args,
                input=content,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise HostsFileError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise HostsFileError(
                f"{' '.join(args)} failed (exit {result.returncode}): {message}"
            )


__all__ = ["HostsFile", "HostsFileError", "LOOPBACK", "entry_pattern"]
