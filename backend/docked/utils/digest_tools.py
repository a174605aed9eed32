"""Digest resolution through external OCI tools (crane, skopeo).

The tools speak the registry protocol for us, including auth flows we do
not implement ourselves. Their answer is advisory: a missing binary, a
non-zero exit or a timeout yields None and callers fall through to their
own manifest request.
"""

import asyncio
import json
import logging
import shutil
from typing import Optional

from docked.config import DIGEST_TOOL_TIMEOUT

logger = logging.getLogger(__name__)

TOOL_PREFERENCE = ("crane", "skopeo")


class DigestTool:
    """Resolve manifest digests by shelling out to crane or skopeo."""

    def __init__(
        self,
        tools: tuple[str, ...] = TOOL_PREFERENCE,
        timeout: float = DIGEST_TOOL_TIMEOUT,
    ) -> None:
        self.tools = tools
        self.timeout = timeout
        self._available: dict[str, bool] = {}
        self._warned_missing = False

    def is_available(self, command: str) -> bool:
        """Check whether a tool is on PATH (memoized)."""
        if command not in self._available:
            self._available[command] = shutil.which(command) is not None
        return self._available[command]

    async def _run(self, *args: str) -> Optional[str]:
        """Run a command and return stdout, or None on failure."""
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"Failed to launch {args[0]}: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"{args[0]} timed out after {self.timeout:.0f}s")
            return None

        if process.returncode != 0:
            logger.debug(f"{args[0]} exited with {process.returncode}: {stderr.decode(errors='replace').strip()}")
            return None

        return stdout.decode(errors="replace").strip()

    async def _crane_digest(self, image_ref: str) -> Optional[str]:
        output = await self._run("crane", "digest", image_ref)
        if output and output.startswith("sha256:"):
            return output
        if output:
            logger.warning(f"Unexpected crane output for {image_ref}: {output[:80]}")
        return None

    async def _skopeo_digest(self, image_ref: str) -> Optional[str]:
        output = await self._run("skopeo", "inspect", "--no-tags", f"docker://{image_ref}")
        if not output:
            return None
        try:
            digest = json.loads(output).get("Digest")
        except (json.JSONDecodeError, AttributeError) as e:
            logger.warning(f"Failed to parse skopeo output for {image_ref}: {e}")
            return None
        if isinstance(digest, str) and digest.startswith("sha256:"):
            return digest
        return None

    async def get_digest(self, image_ref: str) -> Optional[str]:
        """Resolve the manifest digest of image_ref.

        Args:
            image_ref: Full reference, e.g. "ghcr.io/owner/app:v2"

        Returns:
            "sha256:..." digest or None
        """
        runners = {"crane": self._crane_digest, "skopeo": self._skopeo_digest}
        any_available = False

        for tool in self.tools:
            runner = runners.get(tool)
            if runner is None or not self.is_available(tool):
                continue
            any_available = True
            digest = await runner(image_ref)
            if digest:
                logger.debug(f"Resolved {image_ref} with {tool}: {digest}")
                return digest

        if not any_available and not self._warned_missing:
            logger.warning("Neither crane nor skopeo is installed, using registry API only")
            self._warned_missing = True

        return None
