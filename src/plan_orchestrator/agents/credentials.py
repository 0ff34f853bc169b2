"""Access token for headless agents."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from typing import Optional

from ..constants import OAUTH_TOKEN_ENV
from ..errors import CredentialError
from ..storage.file_repos import FileMappingRepository

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"sk-ant-oat01-[A-Za-z0-9_-]+AA")
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

SETUP_TOKEN_COMMAND = ["script", "-q", "/dev/null", "claude", "setup-token"]


def strip_ansi(text: str) -> str:
    """Drop escape sequences and line breaks so a wrapped token reads as one string."""
    return _ANSI_RE.sub("", text).replace("\r", "").replace("\n", "")


def extract_token(output: str) -> Optional[str]:
    match = TOKEN_RE.search(strip_ansi(output))
    return match.group(0) if match else None


class CredentialProvider:
    def __init__(self, repo: FileMappingRepository, configured_token: Optional[str] = None) -> None:
        self._repo = repo
        self._configured_token = configured_token

    def get_token(self) -> Optional[str]:
        env_token = os.environ.get(OAUTH_TOKEN_ENV)
        if env_token:
            return env_token
        if self._configured_token:
            return self._configured_token
        stored = self._repo.load().get("oauth_token")
        return str(stored) if stored else None

    def save_token(self, token: str) -> None:
        def mutate(data: dict) -> None:
            data["oauth_token"] = token

        self._repo.update(mutate)

    def run_setup_token(self) -> str:
        """Run the agent CLI's token setup flow and persist the token it prints.

        The browser side of the flow belongs to the CLI; `script` gives it the
        terminal it insists on.

        Raises:
            CredentialError: If the command fails or prints no token.
        """
        logger.info("Starting token setup: %s", " ".join(SETUP_TOKEN_COMMAND))
        try:
            result = subprocess.run(
                SETUP_TOKEN_COMMAND,
                stdin=None,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise CredentialError(f"Failed to run setup-token: {exc}") from exc

        token = extract_token(result.stdout or "")
        if token:
            logger.info("Token found (length %s)", len(token))
            self.save_token(token)
            return token
        if result.returncode != 0:
            raise CredentialError(f"setup-token exited with code {result.returncode}: {result.stderr}")
        raise CredentialError("No OAuth token found in setup-token output")

    def ensure_token(self) -> str:
        return self.get_token() or self.run_setup_token()
