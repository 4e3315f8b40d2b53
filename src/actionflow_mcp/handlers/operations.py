from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

from actionflow_mcp.errors import HandlerError
from actionflow_mcp.handlers.base import AttemptContext, Handler, HandlerResult
from actionflow_mcp.models.work_item import WorkItemKind

logger = logging.getLogger(__name__)


def _remaining_seconds(context: AttemptContext, requested: float | None) -> float:
    remaining = (context.deadline - datetime.now(timezone.utc)).total_seconds()
    remaining = max(remaining, 0.1)
    return min(requested, remaining) if requested else remaining


class DataOperationHandler(Handler):
    """Validates and reports data operations; the store behind it is external."""

    kind = WorkItemKind.DATA_OPERATION
    retry_safe = False
    operations = {"insert", "update", "delete", "query", "backup", "restore"}

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.require(payload, "operation")
        operation = str(payload["operation"]).lower()
        if operation not in self.operations:
            raise HandlerError(f"Unsupported data operation '{operation}'")
        table = payload.get("table")
        if operation not in ("backup", "restore") and not table:
            raise HandlerError(f"Data operation '{operation}' needs a table")

        data = payload.get("data")
        affected = len(data) if isinstance(data, list) else 1
        logger.info("Data operation: %s on %s", operation, table or "<all>")
        return HandlerResult(
            summary=f"{operation} on {table or 'all tables'}: {affected} row(s)",
            data={"operation": operation, "table": table, "affected_rows": affected},
        )


class ExternalCallHandler(Handler):
    kind = WorkItemKind.EXTERNAL_CALL
    retry_safe = False
    methods = {"GET", "POST", "PUT", "DELETE", "PATCH"}

    def __init__(self, client_factory: Callable[[], httpx.AsyncClient] | None = None):
        self._client_factory = client_factory or httpx.AsyncClient

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.require(payload, "url")
        method = str(payload.get("method", "GET")).upper()
        if method not in self.methods:
            raise HandlerError(f"Unsupported HTTP method '{method}'")
        timeout = _remaining_seconds(context, payload.get("timeout"))

        headers = dict(payload.get("headers") or {})
        headers.setdefault("Idempotency-Key", context.idempotency_key)

        try:
            async with self._client_factory() as client:
                response = await client.request(
                    method,
                    payload["url"],
                    headers=headers,
                    json=payload.get("body"),
                    timeout=timeout,
                )
        except httpx.HTTPError as exc:
            raise HandlerError(f"{method} {payload['url']} failed: {exc}") from exc

        if response.status_code >= 400:
            raise HandlerError(
                f"{method} {payload['url']} returned HTTP {response.status_code}"
            )
        logger.info("API call: %s %s -> %d", method, payload["url"], response.status_code)
        return HandlerResult(
            summary=f"{method} {payload['url']} -> {response.status_code}",
            data={"status_code": response.status_code, "body": response.text[:2000]},
        )


class FileOperationHandler(Handler):
    """File operations confined to a sandbox directory."""

    kind = WorkItemKind.FILE_OPERATION
    retry_safe = True
    operations = {"read", "write", "delete", "copy", "move", "backup"}

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, relative: str) -> Path:
        root = self.root.resolve()
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise HandlerError(f"Path '{relative}' escapes the file sandbox")
        return target

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.require(payload, "operation", "path")
        operation = str(payload["operation"]).lower()
        if operation not in self.operations:
            raise HandlerError(f"Unsupported file operation '{operation}'")
        path = self._resolve(payload["path"])

        try:
            data = await asyncio.to_thread(self._run, operation, path, payload)
        except OSError as exc:
            raise HandlerError(f"File {operation} on {payload['path']} failed: {exc}") from exc

        logger.info("File operation: %s %s", operation, payload["path"])
        return HandlerResult(summary=f"{operation} {payload['path']}", data=data)

    def _run(self, operation: str, path: Path, payload: dict[str, Any]) -> dict[str, Any]:
        encoding = payload.get("encoding", "utf-8")
        if operation == "read":
            content = path.read_text(encoding=encoding)
            return {"path": str(path), "size": len(content), "content": content[:2000]}
        if operation == "write":
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(payload.get("content", ""), encoding=encoding)
            return {"path": str(path), "size": path.stat().st_size}
        if operation == "delete":
            existed = path.exists()
            if existed:
                path.unlink()
            return {"path": str(path), "deleted": existed}

        if operation == "backup":
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
            destination = path.with_name(f"{path.name}.bak-{stamp}")
        else:
            if not payload.get("destination"):
                raise HandlerError(f"File {operation} needs a destination")
            destination = self._resolve(payload["destination"])
        destination.parent.mkdir(parents=True, exist_ok=True)

        if operation == "move":
            if not path.exists() and destination.exists():
                # moved by an earlier attempt
                return {"path": str(path), "destination": str(destination)}
            shutil.move(str(path), str(destination))
        else:
            shutil.copy2(path, destination)
        return {"path": str(path), "destination": str(destination)}


class SystemCommandHandler(Handler):
    """Runs allow-listed executables. Disabled when the allow-list is empty."""

    kind = WorkItemKind.SYSTEM_COMMAND
    retry_safe = False

    def __init__(self, allowed_commands: tuple[str, ...] | list[str] = (), cwd: str | Path | None = None):
        self.allowed_commands = frozenset(allowed_commands)
        self.cwd = Path(cwd) if cwd else None

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.require(payload, "command")
        command = str(payload["command"])
        if command not in self.allowed_commands:
            raise HandlerError(f"Command '{command}' is not in the allow-list")
        args = [str(a) for a in payload.get("args", [])]
        timeout = _remaining_seconds(context, payload.get("timeout"))

        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(self.cwd) if self.cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            raise HandlerError(f"Command '{command}' timed out after {timeout:.1f}s") from None
        finally:
            # also reached when the executor's own deadline cancels us
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        output = stdout.decode(errors="replace").strip()
        if proc.returncode != 0:
            raise HandlerError(
                f"Command '{command}' exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()[:500]}"
            )
        logger.info("System command: %s %s", command, " ".join(args))
        return HandlerResult(
            summary=f"{command} exited 0",
            data={"command": command, "args": args, "exit_code": 0, "output": output[:2000]},
        )
