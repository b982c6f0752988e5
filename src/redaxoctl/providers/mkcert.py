"""mkcert provider issuing locally-trusted development certificates."""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class MkcertError(RuntimeError):
    """Raised when mkcert fails."""


@dataclass(slots=True)
class MkcertProvider:
    """Thin wrapper around the ``mkcert`` binary."""

    mkcert_bin: str = "mkcert"

    def available(self) -> bool:
        """Return ``True`` when the binary can be found on ``PATH``."""
        return shutil.which(self.mkcert_bin) is not None

    def issue(
        self,
        domains: Sequence[str],
        cert_path: Path,
        key_path: Path,
    ) -> subprocess.CompletedProcess[str]:
        """Issue a certificate covering *domains* into the given files."""
        if not domains:
            raise MkcertError("At least one domain is required to issue a certificate.")
        cert_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.parent.mkdir(parents=True, exist_ok=True)
        args = [
            self.mkcert_bin,
            "-cert-file",
            str(cert_path),
            "-key-file",
            str(key_path),
            *domains,
        ]
        return self._run_command(args, error_prefix="mkcert")

    def install_ca(self) -> subprocess.CompletedProcess[str]:
        """Install the local certificate authority into the host trust store."""
        return self._run_command([self.mkcert_bin, "-install"], error_prefix="mkcert -install")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise MkcertError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise MkcertError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["MkcertError", "MkcertProvider"]
