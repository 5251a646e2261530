"""Sandboxed code execution adapters.

One ``execute`` call owns its sandbox from start to finish:

    provision → seed files → run one command → capture output → teardown

Teardown runs on every exit path, including provider errors and
cancellation of the dispatching task. A failed teardown is logged and does
not replace the original outcome.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
import tempfile
from abc import abstractmethod
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

import httpx

from app.core.config import Settings
from app.gateway.adapters.base import ProviderAdapter, require_str
from app.gateway.errors import InvalidEnvelope, ProviderCallError
from app.gateway.normalizer import normalize_runtime_output
from app.gateway.types import EndpointClass, ResourceKind, ResourceScope

logger = logging.getLogger(__name__)

# language → interpreter and inline-code flag
_INTERPRETERS: dict[str, tuple[str, str]] = {
    "python": ("python", "-c"),
    "javascript": ("node", "-e"),
    "typescript": ("node", "-e"),
    "bash": ("bash", "-c"),
    "shell": ("bash", "-c"),
}
DEFAULT_LANGUAGE = "bash"


@dataclass
class SeedFile:
    path: str
    content: str


def parse_seed_files(raw: Any) -> list[SeedFile]:
    """Validate ``parameters.files``; paths must stay inside the sandbox workdir."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidEnvelope("parameters.files must be a list of {path, content} objects")

    files = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise InvalidEnvelope("parameters.files must be a list of {path, content} objects")
        path = item.get("path")
        content = item.get("content", "")
        if not isinstance(path, str) or not path.strip() or not isinstance(content, str):
            raise InvalidEnvelope("each file needs a string path and string content")
        pure = PurePosixPath(path)
        if pure.is_absolute() or ".." in pure.parts:
            raise InvalidEnvelope(f"file path must be relative to the sandbox: {path}")
        files.append(SeedFile(path=str(pure), content=content))
    return files


class RuntimeAdapter(ProviderAdapter):
    resource = ResourceKind.RUNTIME
    scope = ResourceScope.PER_CALL
    actions = {"execute": False}

    def command_for(self, language: str, code: str) -> list[str]:
        interpreter, flag = _INTERPRETERS.get(language, _INTERPRETERS[DEFAULT_LANGUAGE])
        return [interpreter, flag, code]

    @classmethod
    def validate(cls, action: str, params: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "code": require_str(params, "code", f"runtime.{action}"),
            "language": str(params.get("language") or DEFAULT_LANGUAGE).lower(),
            "files": parse_seed_files(params.get("files")),
        }

    async def run(self, action: str, arguments: Mapping[str, Any], *, session_id: str | None = None) -> dict:
        argv = self.command_for(arguments["language"], arguments["code"])

        async with self.sandbox() as sandbox:
            for f in arguments["files"]:
                await self.write_file(sandbox, f)
            output, error, exit_code = await self.run_in_sandbox(sandbox, argv)

        return normalize_runtime_output(output, error, exit_code)

    @abstractmethod
    def sandbox(self) -> Any:
        """Async context manager yielding a sandbox handle; tears it down on exit."""

    @abstractmethod
    async def write_file(self, sandbox: Any, file: SeedFile) -> None: ...

    @abstractmethod
    async def run_in_sandbox(self, sandbox: Any, argv: list[str]) -> tuple[str, str, int | None]: ...


# ---------------------------------------------------------------------------
# E2B (remote-managed)
# ---------------------------------------------------------------------------


@dataclass
class _E2BSandbox:
    sandbox_id: str
    envd_url: str


class E2BRuntimeAdapter(RuntimeAdapter):
    """E2B cloud sandboxes.

    The control plane creates and kills sandboxes; file writes and process
    runs go to the sandbox's own envd endpoint.
    """

    provider_name = "e2b"
    base_url = "https://api.e2b.dev"
    api_key_setting = "e2b_api_key"
    envd_port = 49983
    sandbox_timeout_seconds = 60

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport=transport)
        self.template = settings.e2b_template

    def _auth_headers(self) -> dict[str, str]:
        return {"X-API-Key": self.api_key}

    @asynccontextmanager
    async def sandbox(self) -> AsyncIterator[_E2BSandbox]:
        data = await self._request(
            "POST",
            "/sandboxes",
            json={"templateID": self.template, "timeout": self.sandbox_timeout_seconds},
        )
        sandbox_id = str(data["sandboxID"])
        domain = data.get("domain") or "e2b.app"
        handle = _E2BSandbox(sandbox_id=sandbox_id, envd_url=f"https://{self.envd_port}-{sandbox_id}.{domain}")
        logger.info("E2B sandbox %s provisioned", sandbox_id)
        try:
            yield handle
        finally:
            try:
                await asyncio.shield(self._request("DELETE", f"/sandboxes/{sandbox_id}"))
                logger.info("E2B sandbox %s closed", sandbox_id)
            except ProviderCallError as e:
                logger.warning("E2B sandbox %s teardown failed: %s", sandbox_id, e)

    async def write_file(self, sandbox: _E2BSandbox, file: SeedFile) -> None:
        await self._request(
            "POST",
            f"{sandbox.envd_url}/files",
            json={"path": file.path, "content": file.content},
        )

    async def run_in_sandbox(self, sandbox: _E2BSandbox, argv: list[str]) -> tuple[str, str, int | None]:
        data = await self._request(
            "POST",
            f"{sandbox.envd_url}/process",
            json={"cmd": argv[0], "args": argv[1:]},
            timeout=float(self.sandbox_timeout_seconds),
        )
        return data.get("stdout", ""), data.get("stderr", ""), data.get("exitCode")


# ---------------------------------------------------------------------------
# Local subprocess sandbox (self-hosted)
# ---------------------------------------------------------------------------


class LocalRuntimeAdapter(RuntimeAdapter):
    """Runs code as a child process inside a throwaway working directory.

    This isolates the filesystem view only; it is not a security boundary.
    """

    provider_name = "local"
    endpoint_class = EndpointClass.SELF_HOSTED
    requires_api_key = False

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport=transport)
        self.run_timeout = settings.local_runtime_timeout_seconds

    def command_for(self, language: str, code: str) -> list[str]:
        argv = super().command_for(language, code)
        if argv[0] == "python":
            argv[0] = sys.executable
        return argv

    @asynccontextmanager
    async def sandbox(self) -> AsyncIterator[Path]:
        workdir = Path(tempfile.mkdtemp(prefix="gateway-runtime-"))
        try:
            yield workdir
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def write_file(self, sandbox: Path, file: SeedFile) -> None:
        target = (sandbox / file.path).resolve()
        if not target.is_relative_to(sandbox.resolve()):
            raise InvalidEnvelope(f"file path must be relative to the sandbox: {file.path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(file.content, encoding="utf-8")

    async def run_in_sandbox(self, sandbox: Path, argv: list[str]) -> tuple[str, str, int | None]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=sandbox,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ProviderCallError(f"interpreter not available: {Path(argv[0]).name}") from None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.run_timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            raise ProviderCallError(
                f"local runtime exceeded {self.run_timeout:g}s", timed_out=True
            ) from None
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            proc.returncode,
        )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
