#!/usr/bin/env python3
"""MCP server that turns user-supplied source code into running MCP tool servers."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import shlex
import shutil
import signal
import sys
import tempfile
import textwrap
import time
import uuid
from asyncio import subprocess as aio_subprocess
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import (
    IO,
    Annotated,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Protocol,
    Sequence,
    Union,
)

import anyio
import anyio.to_thread
from anyio.streams.memory import MemoryObjectSendStream
from packaging.version import parse as _parse_version


def _check_pydantic_compatibility() -> None:
    """Abort early when the installed pydantic cannot build argument validators.

    Tool-argument validation and the saved-server document both rely on the
    pydantic 2 ``TypeAdapter``/``create_model`` API. CPython 3.14 additionally
    needs pydantic 2.12 or newer.
    """

    import pydantic

    pyd_version = str(getattr(pydantic, "VERSION", "0"))
    if _parse_version(pyd_version) < _parse_version("2.0"):
        raise RuntimeError(
            f"Detected pydantic {pyd_version} - pydantic 2.x is required.\n"
            "Upgrade it with `pip install -U pydantic`."
        )
    if _parse_version(pyd_version) < _parse_version("2.12.0") and sys.version_info >= (
        3,
        14,
    ):
        raise RuntimeError(
            f"Detected pydantic {pyd_version} in a Python 3.14 environment -\n"
            "please upgrade pydantic to a more recent 2.x release (e.g., `pip install -U pydantic`)."
        )


_check_pydantic_compatibility()

from mcp.client.session import ClientSession  # noqa: E402
from mcp.client.stdio import StdioServerParameters, stdio_client  # noqa: E402
from mcp.server import Server  # noqa: E402
from mcp.server.stdio import stdio_server  # noqa: E402
from mcp.types import (  # noqa: E402
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    CallToolResult,
    TextContent,
    Tool,
)
from pydantic import (  # noqa: E402
    BaseModel,
    ConfigDict,
    Field,
    Strict,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    create_model,
)

logger = logging.getLogger("mcp-create-server")

APP_NAME = "mcp-create-server"
APP_VERSION = "1.0.0"

SERVERS_DIR = Path(
    os.environ.get(
        "MCP_CREATE_SERVERS_DIR",
        str(Path(tempfile.gettempdir()) / "mcp-create-servers"),
    )
).expanduser()
STATE_DIR = Path(
    os.environ.get("MCP_CREATE_STATE_DIR", str(Path.home() / "MCPs"))
).expanduser()
SAVED_SERVERS_FILE = Path(
    os.environ.get(
        "MCP_CREATE_SAVED_SERVERS_FILE", str(STATE_DIR / "saved_servers.json")
    )
).expanduser()
APP_DIR = Path(os.environ.get("MCP_CREATE_APP_DIR", "/app"))
NODE_MODULES_DIR = Path(
    os.environ.get("MCP_CREATE_NODE_MODULES", str(APP_DIR / "node_modules"))
)
PYTHON_COMMAND = os.environ.get("MCP_CREATE_PYTHON", sys.executable or "python3")
SHUTDOWN_GRACE_SECONDS = float(os.environ.get("MCP_CREATE_SHUTDOWN_GRACE", "0.5"))

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"
COMMAND_SEARCH_PATHS: List[str] = [
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "/usr/local/sbin",
    "/usr/sbin",
    "/sbin",
]

# Python dependencies are installed into the sandbox, not the host interpreter.
PYTHON_TARGET_DIR = "site-packages"
NODE_MANIFEST_NAME = "mcp-dynamic-server"

TSC_FLAGS = [
    "--target",
    "ES2020",
    "--module",
    "NodeNext",
    "--moduleResolution",
    "NodeNext",
    "--esModuleInterop",
    "--skipLibCheck",
    "--resolveJsonModule",
]


class Language(str, Enum):
    """Execution strategy for a server's source code."""

    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    PYTHON = "python"

    @classmethod
    def parse(cls, value: object) -> "Language":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported language: {value}") from None

    @property
    def source_filename(self) -> str:
        return _SOURCE_FILENAMES[self]

    @property
    def uses_node(self) -> bool:
        return self is not Language.PYTHON


_SOURCE_FILENAMES = {
    Language.TYPESCRIPT: "index.ts",
    Language.JAVASCRIPT: "index.js",
    Language.PYTHON: "server.py",
}


class ServerNotFoundError(LookupError):
    """Raised when no live server is registered under an id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Server not found"


class SavedServerNotFoundError(ServerNotFoundError):
    """Raised when no saved definition exists under an id."""


class SandboxError(RuntimeError):
    """Raised when a server sandbox cannot be prepared or reached."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class BuildError(SandboxError):
    """Raised when a compiler or package manager fails."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message, stdout=stdout, stderr=stderr)
        self.exit_code = exit_code


class TransportError(SandboxError):
    """Raised when the MCP session with a child process fails."""


# =============================================================================
# Command resolution
# =============================================================================


def resolve_command(
    command: str,
    *,
    search_paths: Optional[Sequence[str]] = None,
    python: Optional[str] = None,
) -> Union[str, List[str]]:
    """Return an absolute path (or argv prefix) for ``command``.

    ``pip`` resolves to ``[python, "-m", "pip"]``. Unresolvable commands are
    returned unchanged so the spawn itself reports the failure.
    """

    python_command = python or PYTHON_COMMAND
    if command == "pip":
        interpreter = resolve_command(python_command, search_paths=search_paths)
        logger.debug("Using %s -m pip instead of pip", interpreter)
        return [str(interpreter), "-m", "pip"]

    if os.path.isabs(command):
        return command

    paths = COMMAND_SEARCH_PATHS if search_paths is None else search_paths
    for directory in paths:
        candidate = os.path.join(directory, command)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            logger.debug("Found command %s at %s", command, candidate)
            return candidate

    if command in {"python", "python3"} and sys.executable:
        logger.debug("%s not found in standard paths, using %s", command, sys.executable)
        return sys.executable

    found = shutil.which(command)
    if found:
        return found

    logger.warning("Command %s not found in standard paths, returning as is", command)
    return command


def command_argv(resolved: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(resolved, str):
        return [resolved]
    return [str(part) for part in resolved]


# =============================================================================
# Argument validation
# =============================================================================


class ValidationOutcome(NamedTuple):
    valid: bool
    error: Optional[str] = None


def _schema_type(schema: object, name: str = "ToolArguments") -> Any:
    if not isinstance(schema, dict):
        return Any

    kind = schema.get("type")
    if kind == "string":
        return StrictStr
    if kind == "number":
        return StrictFloat
    if kind == "integer":
        return StrictInt
    if kind == "boolean":
        return StrictBool
    if kind == "array":
        items = schema.get("items")
        item_type = _schema_type(items, f"{name}Item") if items else Any
        return Annotated[List[item_type], Strict()]  # type: ignore[valid-type]
    if kind == "object":
        properties = schema.get("properties")
        if isinstance(properties, dict):
            return _object_model(name, properties, schema.get("required"))
        return Annotated[Dict[str, Any], Strict()]
    return Any


def _object_model(
    name: str, properties: Dict[str, object], required: object
) -> type[BaseModel]:
    required_keys = (
        {str(key) for key in required} if isinstance(required, list) else set()
    )
    fields: Dict[str, Any] = {}
    # Keys become aliases so any JSON property name is accepted.
    for index, (key, prop_schema) in enumerate(properties.items()):
        field_type = _schema_type(prop_schema, f"{name}_{index}")
        if key in required_keys:
            fields[f"field_{index}"] = (field_type, Field(alias=str(key)))
        else:
            fields[f"field_{index}"] = (
                field_type,
                Field(default=None, alias=str(key)),
            )
    return create_model(name, __config__=ConfigDict(extra="ignore"), **fields)


def build_validator(schema: object) -> TypeAdapter[Any]:
    """Compile a structural JSON schema into a reusable validator."""

    return TypeAdapter(_schema_type(schema))


def validate_arguments(arguments: object, schema: object) -> ValidationOutcome:
    """Check ``arguments`` against ``schema`` and describe the first failure."""

    try:
        build_validator(schema).validate_python(arguments)
    except ValidationError as exc:
        errors = exc.errors()
        if not errors:
            return ValidationOutcome(False, str(exc))
        first = errors[0]
        path = ".".join(str(part) for part in first["loc"]) or "(root)"
        if first["type"] == "missing":
            return ValidationOutcome(False, f"Missing required parameter: '{path}'")
        # Generated model names are internal; report the JSON type instead.
        message = (
            "Input should be an object" if first["type"] == "model_type" else first["msg"]
        )
        return ValidationOutcome(False, f"Parameter '{path}': {message}")
    return ValidationOutcome(True)


def _tool_error(code: int, message: str) -> CallToolResult:
    error = {"code": code, "message": message}
    return CallToolResult(
        content=[
            TextContent(
                type="text", text=json.dumps({"jsonrpc": "2.0", "error": error})
            )
        ],
        structuredContent={"error": error},
        isError=True,
    )


# =============================================================================
# External processes
# =============================================================================


class ProcessOutput(NamedTuple):
    returncode: int
    stdout: str
    stderr: str


Runner = Callable[..., Awaitable[ProcessOutput]]


def _split_output_lines(stream: Optional[str]) -> List[str]:
    if not stream:
        return []
    return [line for line in stream.splitlines() if line.strip()]


async def run_process(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Optional[Mapping[str, str]] = None,
    label: str,
) -> ProcessOutput:
    """Run a build step to completion; non-zero exit raises ``BuildError``."""

    logger.info("%s: %s (cwd=%s)", label, shlex.join(argv), cwd)
    try:
        # stdin is detached so children never read the MCP channel.
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdin=aio_subprocess.DEVNULL,
            stdout=aio_subprocess.PIPE,
            stderr=aio_subprocess.PIPE,
        )
    except OSError as exc:
        raise BuildError(f"{label} could not be started: {exc}") from exc

    stdout_bytes, stderr_bytes = await process.communicate()
    stdout_text = stdout_bytes.decode(errors="replace")
    stderr_text = stderr_bytes.decode(errors="replace")
    for line in _split_output_lines(stdout_text):
        logger.debug("%s stdout: %s", label, line)
    for line in _split_output_lines(stderr_text):
        logger.debug("%s stderr: %s", label, line)

    returncode = process.returncode if process.returncode is not None else -1
    if returncode != 0:
        logger.error("%s failed with code %s", label, returncode)
        raise BuildError(
            f"{label} failed with code {returncode}",
            exit_code=returncode,
            stdout=stdout_text,
            stderr=stderr_text,
        )
    logger.info("%s successful", label)
    return ProcessOutput(returncode, stdout_text, stderr_text)


# =============================================================================
# Dependency installation
# =============================================================================


class DependencyInstaller:
    """Write a manifest into a sandbox and run the language's package manager."""

    def __init__(
        self,
        *,
        app_dir: Optional[Path] = None,
        python: Optional[str] = None,
        runner: Optional[Runner] = None,
    ) -> None:
        self.app_dir = Path(app_dir or APP_DIR)
        self.python = python or PYTHON_COMMAND
        self._runner = runner or run_process

    async def install(
        self, sandbox: Path, language: Language, dependencies: Mapping[str, str]
    ) -> None:
        if not dependencies:
            return
        language = Language.parse(language)
        logger.info("Installing dependencies for %s in %s", language.value, sandbox)
        if language.uses_node:
            await self._install_node(sandbox, language, dependencies)
        else:
            await self._install_python(sandbox, dependencies)

    async def host_protocol_dependencies(self) -> Dict[str, str]:
        """Return the MCP SDK entries of the host's own ``package.json``."""

        manifest_path = anyio.Path(self.app_dir / "package.json")
        try:
            data = json.loads(await manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Error reading app package.json: %s", exc)
            return {}

        dependencies = data.get("dependencies") if isinstance(data, dict) else None
        if not isinstance(dependencies, dict):
            return {}
        return {
            str(name): str(version)
            for name, version in dependencies.items()
            if str(name).startswith("@modelcontextprotocol") or name == "mcp"
        }

    async def _install_node(
        self, sandbox: Path, language: Language, dependencies: Mapping[str, str]
    ) -> None:
        merged = await self.host_protocol_dependencies()
        merged.update({str(name): str(version) for name, version in dependencies.items()})
        manifest: Dict[str, object] = {
            "name": NODE_MANIFEST_NAME,
            "version": "1.0.0",
        }
        # Compiled TypeScript is emitted as ES modules; plain JavaScript stays CommonJS.
        if language is Language.TYPESCRIPT:
            manifest["type"] = "module"
        manifest["dependencies"] = merged

        await anyio.Path(sandbox / "package.json").write_text(
            json.dumps(manifest, indent=2), encoding="utf-8"
        )
        argv = [*command_argv(resolve_command("npm")), "install"]
        await self._runner(argv, cwd=sandbox, env=dict(os.environ), label="npm install")

    async def _install_python(
        self, sandbox: Path, dependencies: Mapping[str, str]
    ) -> None:
        requirements = "\n".join(
            f"{name}{constraint}" for name, constraint in dependencies.items()
        )
        await anyio.Path(sandbox / "requirements.txt").write_text(
            requirements + "\n", encoding="utf-8"
        )
        argv = [
            *command_argv(resolve_command("pip", python=self.python)),
            "install",
            "--target",
            PYTHON_TARGET_DIR,
            "-r",
            "requirements.txt",
        ]
        await self._runner(argv, cwd=sandbox, env=dict(os.environ), label="pip install")


# =============================================================================
# Sandbox building
# =============================================================================


@dataclass
class ServerBuild:
    """Everything needed to launch one materialized server."""

    server_id: str
    language: Language
    sandbox_path: Path
    source_path: Path
    command: str
    args: List[str]
    env: Dict[str, str]
    cwd: Path


async def remove_sandbox(path: Path) -> None:
    """Best-effort recursive removal; symlinked host caches are unlinked, not followed."""

    try:
        await anyio.to_thread.run_sync(shutil.rmtree, path)
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Error cleaning up sandbox %s: %s", path, exc)
    else:
        logger.debug("Removed sandbox %s", path)


class SandboxBuilder:
    """Materialize source code into an isolated directory ready to spawn."""

    def __init__(
        self,
        servers_dir: Optional[Path] = None,
        *,
        app_dir: Optional[Path] = None,
        node_modules: Optional[Path] = None,
        python: Optional[str] = None,
        installer: Optional[DependencyInstaller] = None,
        runner: Optional[Runner] = None,
    ) -> None:
        self.servers_dir = Path(servers_dir or SERVERS_DIR)
        self.app_dir = Path(app_dir or APP_DIR)
        self.node_modules = Path(node_modules or NODE_MODULES_DIR)
        self.python = python or PYTHON_COMMAND
        self._runner = runner or run_process
        self.installer = installer or DependencyInstaller(
            app_dir=self.app_dir, python=self.python, runner=self._runner
        )

    async def prepare(self) -> None:
        """Create the root that holds every sandbox."""

        root = anyio.Path(self.servers_dir)
        try:
            await root.mkdir(parents=True, exist_ok=True)
            # Children may run under another uid in container deployments.
            await root.chmod(0o777)
            logger.info("Created servers directory: %s", self.servers_dir)
        except OSError as exc:
            logger.error("Error creating servers directory: %s", exc)

    async def build(
        self,
        server_id: str,
        code: str,
        language: Union[Language, str],
        dependencies: Optional[Mapping[str, str]] = None,
    ) -> ServerBuild:
        language = Language.parse(language)
        sandbox = self.servers_dir / server_id
        try:
            await self._make_sandbox(sandbox)

            if dependencies:
                await self.installer.install(sandbox, language, dependencies)
            elif language.uses_node:
                await self._link_node_modules(sandbox)

            source_path = sandbox / language.source_filename
            await anyio.Path(source_path).write_text(code, encoding="utf-8")

            env = self._environment(sandbox, language, bool(dependencies))
            if language is Language.TYPESCRIPT:
                await self._compile_typescript(source_path, sandbox, env)
                argv = [
                    *command_argv(resolve_command("node")),
                    str(sandbox / "index.js"),
                ]
            elif language is Language.JAVASCRIPT:
                argv = [*command_argv(resolve_command("node")), str(source_path)]
            else:
                argv = [
                    *command_argv(resolve_command(self.python)),
                    str(source_path),
                ]
        except BaseException:
            logger.error("Error creating server %s, removing %s", server_id, sandbox)
            await remove_sandbox(sandbox)
            raise

        logger.info("Prepared %s server %s: %s", language.value, server_id, shlex.join(argv))
        return ServerBuild(
            server_id=server_id,
            language=language,
            sandbox_path=sandbox,
            source_path=source_path,
            command=argv[0],
            args=argv[1:],
            env=env,
            cwd=sandbox,
        )

    async def _make_sandbox(self, sandbox: Path) -> None:
        path = anyio.Path(sandbox)
        await path.mkdir(parents=True)
        await path.chmod(0o777)

    async def _link_node_modules(self, sandbox: Path) -> None:
        link = anyio.Path(sandbox / "node_modules")
        try:
            await link.symlink_to(self.node_modules, target_is_directory=True)
            logger.info("Created symlink to node_modules in %s", sandbox)
        except OSError as exc:
            logger.warning("Error creating node_modules symlink in %s: %s", sandbox, exc)

    def _environment(
        self, sandbox: Path, language: Language, has_dependencies: bool
    ) -> Dict[str, str]:
        env = dict(os.environ)
        env["PATH"] = os.environ.get("PATH") or DEFAULT_PATH
        if language.uses_node:
            env["NODE_PATH"] = str(self.node_modules)
            return env

        env["PYTHONUNBUFFERED"] = "1"
        if has_dependencies:
            target = str(sandbox / PYTHON_TARGET_DIR)
            existing = env.get("PYTHONPATH")
            env["PYTHONPATH"] = os.pathsep.join([target, existing]) if existing else target
        return env

    async def _compile_typescript(
        self, source_path: Path, sandbox: Path, env: Mapping[str, str]
    ) -> None:
        argv = [
            *command_argv(resolve_command("npx")),
            "tsc",
            "--allowJs",
            str(source_path),
            "--outDir",
            str(sandbox),
            *TSC_FLAGS,
        ]
        # tsc is installed with the host application.
        cwd = self.app_dir if await anyio.Path(self.app_dir).is_dir() else sandbox
        await self._runner(argv, cwd=cwd, env=env, label="TypeScript compilation")


# =============================================================================
# Process sessions
# =============================================================================


@dataclass
class SessionEvent:
    """Published once when a running session's transport goes away."""

    server_id: str
    error: Optional[BaseException] = None


class SessionLike(Protocol):
    server_id: str

    @property
    def is_open(self) -> bool:  # pragma: no cover - typing only
        ...

    async def start(self) -> None:  # pragma: no cover - typing only
        ...

    async def list_tools(self) -> List[Tool]:  # pragma: no cover - typing only
        ...

    async def call_tool(
        self, name: str, arguments: Dict[str, Any]
    ) -> CallToolResult:  # pragma: no cover - typing only
        ...

    async def close(self) -> None:  # pragma: no cover - typing only
        ...

    def request_close(self) -> None:  # pragma: no cover - typing only
        ...


SessionFactory = Callable[
    [str, ServerBuild, MemoryObjectSendStream[SessionEvent]], SessionLike
]


def _leaf_exception(exc: BaseException) -> BaseException:
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


def _is_blank_line_error(item: Exception) -> bool:
    message = str(item)
    return (
        "Invalid JSON" in message
        and "EOF while parsing a value" in message
        and "input_value='\\n'" in message
    )


class ProcessSession:
    """Own one spawned MCP server and the client session talking to it.

    A supervising task enters ``stdio_client`` and ``ClientSession`` and exits
    them again, so both context managers live in a single task. Once the
    session has started, the supervisor publishes exactly one
    ``SessionEvent`` when it ends, whatever the reason.
    """

    def __init__(
        self,
        server_id: str,
        build: ServerBuild,
        events: MemoryObjectSendStream[SessionEvent],
    ) -> None:
        self.server_id = server_id
        self.build = build
        self._events = events
        self._session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._ready: Optional[asyncio.Future[None]] = None
        self._stop: Optional[anyio.Event] = None
        self._scope: Optional[anyio.CancelScope] = None
        self._started = False
        self._captured_stderr: Optional[IO[str]] = None

    @property
    def is_open(self) -> bool:
        return self._session is not None

    async def start(self) -> None:
        if self._task is not None:
            return

        self._ready = asyncio.get_running_loop().create_future()
        self._stop = anyio.Event()
        self._captured_stderr = tempfile.TemporaryFile(mode="w+t", encoding="utf-8")
        self._task = asyncio.create_task(
            self._supervise(), name=f"mcp-server-{self.server_id}"
        )
        try:
            await asyncio.shield(self._ready)
        except asyncio.CancelledError:
            await self.close()
            raise
        except Exception as exc:
            stderr_text = self._read_captured_stderr()
            logger.error(
                "Error connecting to server %s: %s (stderr=%s)",
                self.server_id,
                _leaf_exception(exc),
                stderr_text.strip(),
            )
            await self.close()
            raise TransportError(
                f"Failed to connect to server {self.server_id}: {_leaf_exception(exc)}",
                stderr=stderr_text,
            ) from exc

    async def _supervise(self) -> None:
        assert self._ready is not None and self._stop is not None
        params = StdioServerParameters(
            command=self.build.command,
            args=list(self.build.args),
            env=dict(self.build.env),
            cwd=str(self.build.cwd),
        )
        error: Optional[BaseException] = None
        try:
            async with stdio_client(params, errlog=self._captured_stderr) as (
                raw_read_stream,
                write_stream,
            ):
                filtered_writer, filtered_read = anyio.create_memory_object_stream(0)
                async with anyio.create_task_group() as tg:
                    self._scope = tg.cancel_scope
                    tg.start_soon(self._forward_read, raw_read_stream, filtered_writer)
                    async with ClientSession(filtered_read, write_stream) as session:
                        await session.initialize()
                        self._session = session
                        self._started = True
                        if not self._ready.done():
                            self._ready.set_result(None)
                        logger.info("Connected to server %s", self.server_id)
                        await self._stop.wait()
                        self._session = None
                    tg.cancel_scope.cancel()
        except Exception as exc:
            error = exc
        finally:
            self._session = None
            self._scope = None
            if not self._started:
                if not self._ready.done():
                    self._ready.set_exception(
                        error
                        or TransportError(
                            f"Server {self.server_id} exited before initialization completed"
                        )
                    )
            else:
                self._publish(error)

    async def _forward_read(self, raw_read_stream: Any, filtered_writer: Any) -> None:
        try:
            async with filtered_writer:
                async for item in raw_read_stream:
                    if isinstance(item, Exception) and _is_blank_line_error(item):
                        continue
                    await filtered_writer.send(item)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Client session for %s stopped reading", self.server_id)

        logger.debug("Server %s closed its output stream", self.server_id)
        if self._started and self._stop is not None:
            self._stop.set()
        elif self._scope is not None:
            self._scope.cancel()

    def _publish(self, error: Optional[BaseException]) -> None:
        try:
            self._events.send_nowait(SessionEvent(self.server_id, error))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Dropped lifecycle event for server %s", self.server_id)

    def _read_captured_stderr(self) -> str:
        if self._captured_stderr is None:
            return ""
        try:
            self._captured_stderr.seek(0)
            return self._captured_stderr.read()
        except (OSError, ValueError):
            return "<failed to read captured stderr>"

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise TransportError(f"Server {self.server_id} is not connected")
        return self._session

    async def list_tools(self) -> List[Tool]:
        result = await self._require_session().list_tools()
        return list(result.tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        session = self._require_session()
        start_time = time.perf_counter()
        logger.info("Calling %s on server %s with args %s", name, self.server_id, arguments)
        result = await session.call_tool(name, arguments)
        logger.info(
            "%s on server %s completed in %.2fs",
            name,
            self.server_id,
            time.perf_counter() - start_time,
        )
        return result

    def request_close(self) -> None:
        """Ask the supervisor to stop without waiting for it."""

        if self._stop is not None:
            self._stop.set()
        if self._scope is not None and not self._started:
            self._scope.cancel()

    async def close(self) -> None:
        if self._task is None:
            return
        self.request_close()
        with suppress(asyncio.CancelledError):
            await self._task
        if self._captured_stderr is not None:
            with suppress(OSError):
                self._captured_stderr.close()
            self._captured_stderr = None


# =============================================================================
# Server registry
# =============================================================================


@dataclass
class ManagedServer:
    server_id: str
    language: Language
    sandbox_path: Path
    source_path: Path
    session: SessionLike = field(repr=False)


class ServerInfo(NamedTuple):
    language: Language
    source_path: Path


class ServerManager:
    """Authority over live servers, keyed by generated server id."""

    def __init__(
        self,
        builder: Optional[SandboxBuilder] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.builder = builder or SandboxBuilder()
        self.session_factory: SessionFactory = session_factory or ProcessSession
        self.servers: Dict[str, ManagedServer] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._events_send, self._events_receive = anyio.create_memory_object_stream(
            math.inf
        )
        self._watch_task: Optional[asyncio.Task[None]] = None

    # -- single mutation point -------------------------------------------------

    def _register(self, entry: ManagedServer) -> None:
        self.servers[entry.server_id] = entry

    def _discard(self, server_id: str) -> Optional[ManagedServer]:
        self._locks.pop(server_id, None)
        return self.servers.pop(server_id, None)

    def _require(self, server_id: str) -> ManagedServer:
        entry = self.servers.get(server_id)
        if entry is None:
            raise ServerNotFoundError(f"Server {server_id} not found")
        return entry

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    def _ensure_watcher(self) -> None:
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(
                self._watch_events(), name="mcp-server-events"
            )

    async def _watch_events(self) -> None:
        async for event in self._events_receive:
            entry = self.servers.get(event.server_id)
            if entry is None or entry.session.is_open:
                continue
            if event.error is not None:
                logger.warning(
                    "Server %s transport error: %s",
                    event.server_id,
                    _leaf_exception(event.error),
                )
            else:
                logger.info("Server %s transport closed", event.server_id)
            if self._discard(event.server_id) is not None:
                await remove_sandbox(entry.sandbox_path)

    async def _stop_watcher(self) -> None:
        if self._watch_task is None:
            return
        task = self._watch_task
        self._watch_task = None
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    # -- operations ------------------------------------------------------------

    async def create(
        self,
        code: str,
        language: Union[Language, str],
        dependencies: Optional[Mapping[str, str]] = None,
    ) -> str:
        language = Language.parse(language)
        server_id = str(uuid.uuid4())
        self._ensure_watcher()

        build = await self.builder.build(server_id, code, language, dependencies)
        session = self.session_factory(server_id, build, self._events_send)
        try:
            await session.start()
            if not session.is_open:
                raise TransportError(f"Server {server_id} exited during startup")
        except BaseException:
            await session.close()
            await remove_sandbox(build.sandbox_path)
            raise

        self._register(
            ManagedServer(
                server_id=server_id,
                language=language,
                sandbox_path=build.sandbox_path,
                source_path=build.source_path,
                session=session,
            )
        )
        logger.info("Created %s server %s", language.value, server_id)
        return server_id

    async def get_tools(self, server_id: str) -> List[Tool]:
        entry = self._require(server_id)
        return await entry.session.list_tools()

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> CallToolResult:
        entry = self._require(server_id)
        arguments = {} if arguments is None else arguments

        # Tools are re-read on every call; the child may change them at runtime.
        tools = await entry.session.list_tools()
        tool = next((item for item in tools if item.name == tool_name), None)
        if tool is None:
            return _tool_error(METHOD_NOT_FOUND, f"Tool not found: {tool_name}")

        if tool.inputSchema:
            outcome = validate_arguments(arguments, tool.inputSchema)
            if not outcome.valid:
                return _tool_error(
                    INVALID_PARAMS, f"Invalid parameters: {outcome.error}"
                )

        return await entry.session.call_tool(tool_name, arguments)

    async def update(self, server_id: str, code: str) -> str:
        """Replace a server with a fresh one running ``code``; returns the new id."""

        self._require(server_id)
        async with self._lock_for(server_id):
            entry = self._require(server_id)
            await entry.session.close()
            self._discard(server_id)
            await remove_sandbox(entry.sandbox_path)
            new_server_id = await self.create(code, entry.language)
        logger.info("Server %s updated and restarted as %s", server_id, new_server_id)
        return new_server_id

    async def delete(self, server_id: str) -> Dict[str, object]:
        self._require(server_id)
        async with self._lock_for(server_id):
            entry = self._require(server_id)
            await entry.session.close()
            self._discard(server_id)
            await remove_sandbox(entry.sandbox_path)
        logger.info("Server %s deleted", server_id)
        return {"success": True, "message": f"Server {server_id} deleted"}

    def list_servers(self) -> List[str]:
        return list(self.servers)

    async def get_server_code(self, server_id: str) -> str:
        entry = self._require(server_id)
        try:
            return await anyio.Path(entry.source_path).read_text(encoding="utf-8")
        except OSError as exc:
            raise SandboxError(
                f"Code of server {server_id} is not accessible: {exc}"
            ) from exc

    def get_server_info(self, server_id: str) -> ServerInfo:
        entry = self._require(server_id)
        return ServerInfo(language=entry.language, source_path=entry.source_path)

    async def close_all(self) -> None:
        for server_id, entry in list(self.servers.items()):
            try:
                await entry.session.close()
                logger.info("Closed server %s", server_id)
            except Exception:
                logger.error("Error closing server %s", server_id, exc_info=True)
            await remove_sandbox(entry.sandbox_path)
        self.servers.clear()
        self._locks.clear()
        await self._stop_watcher()

    def shutdown(self) -> None:
        """Issue close to every server without waiting for any of them.

        Used from signal handlers: shutdown latency stays bounded at the cost
        of children possibly being terminated ungracefully.
        """

        logger.info("Starting cleanup process...")
        for server_id, entry in list(self.servers.items()):
            logger.info("Terminating server %s...", server_id)
            try:
                entry.session.request_close()
            except Exception:
                logger.warning("Transport close error for %s", server_id, exc_info=True)
        self.servers.clear()
        self._locks.clear()
        logger.info("Cleanup completed")


# =============================================================================
# Saved server definitions
# =============================================================================


class SavedServer(BaseModel):
    """A durable, non-running server definition."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    code: str
    language: Language
    saved_at: str = Field(alias="savedAt")
    server_id: Optional[str] = Field(default=None, alias="serverId")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _write_document(path: Path, document: Dict[str, Any]) -> None:
    """Replace ``path`` atomically (tempfile + fsync + os.replace)."""

    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        json.dump(document, handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
        handle.close()
        os.replace(handle.name, path)
    except BaseException:
        handle.close()
        with suppress(OSError):
            os.unlink(handle.name)
        raise


class SavedServerStore:
    """Saved definitions kept in one JSON document, rewritten on every change.

    Entries that fail validation are skipped when reading but written back
    untouched, so one bad entry never costs the others.
    """

    def __init__(self, manager: ServerManager, path: Optional[Path] = None) -> None:
        self.manager = manager
        self.path = Path(path or SAVED_SERVERS_FILE)
        self._lock = asyncio.Lock()

    async def _read_raw(self) -> Dict[str, Any]:
        try:
            raw = await anyio.Path(self.path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read saved servers from %s: %s", self.path, exc)
            return {}
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring invalid saved servers file %s: %s", self.path, exc)
            return {}
        if not isinstance(document, dict):
            logger.warning("Ignoring saved servers file %s: not a JSON object", self.path)
            return {}
        return document

    def _valid_entries(self, document: Dict[str, Any]) -> Dict[str, SavedServer]:
        entries: Dict[str, SavedServer] = {}
        for saved_id, value in document.items():
            try:
                entries[saved_id] = SavedServer.model_validate(value)
            except ValidationError as exc:
                logger.warning(
                    "Skipping invalid saved server %s in %s: %s",
                    saved_id,
                    self.path,
                    exc.errors()[0]["msg"] if exc.errors() else exc,
                )
        return entries

    async def _read(self) -> Dict[str, SavedServer]:
        return self._valid_entries(await self._read_raw())

    async def _write(self, document: Dict[str, Any]) -> None:
        await anyio.to_thread.run_sync(_write_document, self.path, document)

    async def save(
        self, server_id: str, name: str, saved_id: Optional[str] = None
    ) -> str:
        """Persist a live server's current code; returns the saved-definition id."""

        code = await self.manager.get_server_code(server_id)
        info = self.manager.get_server_info(server_id)
        entry = SavedServer(
            name=name,
            code=code,
            language=info.language,
            saved_at=_utc_now(),
            server_id=server_id,
        )

        async with self._lock:
            document = await self._read_raw()
            if saved_id is not None and saved_id not in document:
                raise SavedServerNotFoundError(f"Saved server {saved_id} not found")
            saved_id = saved_id or str(uuid.uuid4())
            document[saved_id] = entry.model_dump(
                mode="json", by_alias=True, exclude_none=True
            )
            await self._write(document)
        logger.info("Server %s saved to disk as %r (%s)", server_id, name, saved_id)
        return saved_id

    async def list(self) -> List[Dict[str, str]]:
        document = await self._read()
        return [
            {
                "id": saved_id,
                "name": entry.name,
                "language": entry.language.value,
                "savedAt": entry.saved_at,
            }
            for saved_id, entry in document.items()
        ]

    async def get(self, saved_id: str) -> SavedServer:
        document = await self._read()
        entry = document.get(saved_id)
        if entry is None:
            raise SavedServerNotFoundError(f"Saved server {saved_id} not found")
        return entry

    async def load(self, saved_id: str) -> str:
        """Start a new live server from a saved definition; returns its id."""

        entry = await self.get(saved_id)
        server_id = await self.manager.create(entry.code, entry.language)
        logger.info("Loaded saved server %r as new server %s", entry.name, server_id)
        return server_id

    async def delete(self, saved_id: str) -> None:
        async with self._lock:
            document = await self._read_raw()
            if saved_id not in document:
                raise SavedServerNotFoundError(f"Saved server {saved_id} not found")
            del document[saved_id]
            await self._write(document)
        logger.info("Saved server %s deleted from disk", saved_id)


# =============================================================================
# Server templates
# =============================================================================

PYTHON_TEMPLATE = textwrap.dedent(
    '''
    #!/usr/bin/env python3
    """Dynamic MCP server generated from the Python template."""

    import asyncio
    import logging
    from typing import Any, Dict, List

    from mcp.server import Server
    from mcp.server.stdio import stdio_server
    from mcp.types import TextContent, Tool

    SERVER_NAME = "dynamic-python-server"

    # Logs go to stderr; stdout carries the MCP protocol.
    logging.basicConfig(level=logging.INFO, format="%(name)s - %(message)s")
    logger = logging.getLogger(SERVER_NAME)

    app = Server(SERVER_NAME)


    @app.list_tools()
    async def list_tools() -> List[Tool]:
        return [
            Tool(
                name="echo",
                description="Echo back a message",
                inputSchema={
                    "type": "object",
                    "properties": {"message": {"type": "string"}},
                    "required": ["message"],
                },
            )
        ]


    @app.call_tool()
    async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
        logger.info("Tool called: %s with args: %s", name, arguments)
        if name == "echo":
            return [TextContent(type="text", text=f"Echo: {arguments.get('message')}")]
        raise ValueError(f"Tool not found: {name}")


    async def main() -> None:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())


    if __name__ == "__main__":
        try:
            asyncio.run(main())
        except KeyboardInterrupt:
            pass
    '''
).lstrip()

TYPESCRIPT_TEMPLATE = textwrap.dedent(
    """
    import { Server } from "@modelcontextprotocol/sdk/server/index.js";
    import { StdioServerTransport } from "@modelcontextprotocol/sdk/server/stdio.js";
    import {
      CallToolRequestSchema,
      ListToolsRequestSchema,
    } from "@modelcontextprotocol/sdk/types.js";

    const server = new Server(
      { name: "dynamic-typescript-server", version: "1.0.0" },
      { capabilities: { tools: {} } }
    );

    server.setRequestHandler(ListToolsRequestSchema, async () => ({
      tools: [
        {
          name: "echo",
          description: "Echo back a message",
          inputSchema: {
            type: "object",
            properties: { message: { type: "string" } },
            required: ["message"],
          },
        },
      ],
    }));

    server.setRequestHandler(CallToolRequestSchema, async (request) => {
      if (request.params.name === "echo") {
        const message = request.params.arguments?.message as string;
        return { content: [{ type: "text", text: `Echo: ${message}` }] };
      }
      throw new Error(`Tool not found: ${request.params.name}`);
    });

    const transport = new StdioServerTransport();
    server.connect(transport);
    """
).lstrip()

JAVASCRIPT_TEMPLATE = textwrap.dedent(
    """
    const { Server } = require("@modelcontextprotocol/sdk/server/index.js");
    const { StdioServerTransport } = require("@modelcontextprotocol/sdk/server/stdio.js");
    const {
      CallToolRequestSchema,
      ListToolsRequestSchema,
    } = require("@modelcontextprotocol/sdk/types.js");

    const server = new Server(
      { name: "dynamic-javascript-server", version: "1.0.0" },
      { capabilities: { tools: {} } }
    );

    server.setRequestHandler(ListToolsRequestSchema, async () => ({
      tools: [
        {
          name: "echo",
          description: "Echo back a message",
          inputSchema: {
            type: "object",
            properties: { message: { type: "string" } },
            required: ["message"],
          },
        },
      ],
    }));

    server.setRequestHandler(CallToolRequestSchema, async (request) => {
      if (request.params.name === "echo") {
        const message = (request.params.arguments || {}).message;
        return { content: [{ type: "text", text: `Echo: ${message}` }] };
      }
      throw new Error(`Tool not found: ${request.params.name}`);
    });

    const transport = new StdioServerTransport();
    server.connect(transport);
    """
).lstrip()

TEMPLATES: Dict[Language, str] = {
    Language.TYPESCRIPT: TYPESCRIPT_TEMPLATE,
    Language.JAVASCRIPT: JAVASCRIPT_TEMPLATE,
    Language.PYTHON: PYTHON_TEMPLATE,
}


# =============================================================================
# MCP command surface
# =============================================================================


def _string_property(description: str) -> Dict[str, object]:
    return {"type": "string", "description": description}


def _command_tools() -> List[Tool]:
    languages = [language.value for language in Language]
    return [
        Tool(
            name="create-server-from-template",
            description=(
                "Create and start a new MCP server. Pass `code` to run your own "
                "server implementation, or omit it to start the built-in `echo` "
                "template for the language. The server must speak MCP over stdio. "
                "Python servers can use the `mcp` package; TypeScript and JavaScript "
                "servers can use `@modelcontextprotocol/sdk`."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "language": {
                        "type": "string",
                        "enum": languages,
                        "description": "Programming language of the server",
                    },
                    "code": _string_property(
                        "Server source code. The language template is used when omitted."
                    ),
                    "dependencies": {
                        "type": "object",
                        "description": 'Packages and version constraints, e.g. {"axios": "^1.0.0"} or {"requests": ">=2.31"}',
                    },
                },
                "required": ["language"],
            },
        ),
        Tool(
            name="execute-tool",
            description="Execute a tool on a running server",
            inputSchema={
                "type": "object",
                "properties": {
                    "serverId": _string_property("ID of the server"),
                    "toolName": _string_property("Name of the tool to execute"),
                    "args": {
                        "type": "object",
                        "description": "Arguments passed to the tool",
                    },
                },
                "required": ["serverId", "toolName"],
            },
        ),
        Tool(
            name="get-server-tools",
            description="List the tools a running server currently exposes",
            inputSchema={
                "type": "object",
                "properties": {"serverId": _string_property("ID of the server")},
                "required": ["serverId"],
            },
        ),
        Tool(
            name="update-server",
            description=(
                "Replace a running server with new code. The old server ID stops "
                "working and a new server ID is returned."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "serverId": _string_property("ID of the server"),
                    "code": _string_property("New server source code"),
                },
                "required": ["serverId", "code"],
            },
        ),
        Tool(
            name="delete-server",
            description="Stop a running server and remove its sandbox",
            inputSchema={
                "type": "object",
                "properties": {"serverId": _string_property("ID of the server")},
                "required": ["serverId"],
            },
        ),
        Tool(
            name="list-servers",
            description="List the IDs of all running servers",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="save-server",
            description="Save a running server's code to disk so it can be loaded later",
            inputSchema={
                "type": "object",
                "properties": {
                    "serverId": _string_property("ID of the running server"),
                    "name": _string_property("Name for the saved server"),
                    "savedServerId": _string_property(
                        "Existing saved server to overwrite (optional)"
                    ),
                },
                "required": ["serverId", "name"],
            },
        ),
        Tool(
            name="list-saved-servers",
            description="List the servers saved on disk",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="load-saved-server",
            description="Start a new running server from a saved server",
            inputSchema={
                "type": "object",
                "properties": {
                    "savedServerId": _string_property("ID of the saved server")
                },
                "required": ["savedServerId"],
            },
        ),
        Tool(
            name="delete-saved-server",
            description="Permanently delete a saved server from disk",
            inputSchema={
                "type": "object",
                "properties": {
                    "savedServerId": _string_property("ID of the saved server")
                },
                "required": ["savedServerId"],
            },
        ),
    ]


def _json_result(payload: Dict[str, Any], *, is_error: bool = False) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(payload))],
        structuredContent=payload,
        isError=is_error,
    )


def _error_result(message: str) -> CallToolResult:
    return _json_result({"error": message}, is_error=True)


CommandHandler = Callable[[Dict[str, Any]], Awaitable[CallToolResult]]


class ToolDispatcher:
    """Map MCP tool calls onto ``ServerManager`` and ``SavedServerStore``."""

    def __init__(self, manager: ServerManager, store: SavedServerStore) -> None:
        self.manager = manager
        self.store = store
        self._tools = {tool.name: tool for tool in _command_tools()}
        self._handlers: Dict[str, CommandHandler] = {
            "create-server-from-template": self._create_from_template,
            "execute-tool": self._execute_tool,
            "get-server-tools": self._get_server_tools,
            "update-server": self._update_server,
            "delete-server": self._delete_server,
            "list-servers": self._list_servers,
            "save-server": self._save_server,
            "list-saved-servers": self._list_saved_servers,
            "load-saved-server": self._load_saved_server,
            "delete-saved-server": self._delete_saved_server,
        }

    async def list_tools(self) -> List[Tool]:
        return list(self._tools.values())

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]]
    ) -> CallToolResult:
        arguments = {} if arguments is None else arguments
        logger.info("call_tool invoked: name=%s", name)
        handler = self._handlers.get(name)
        if handler is None:
            return _error_result(f"Unknown tool: {name}")

        outcome = validate_arguments(arguments, self._tools[name].inputSchema)
        if not outcome.valid:
            return _error_result(outcome.error or "Invalid arguments")

        try:
            return await handler(arguments)
        except (ServerNotFoundError, SandboxError, ValueError) as exc:
            logger.error("Error executing tool %s: %s", name, exc)
            return _error_result(str(exc))
        except Exception as exc:
            logger.error("Unexpected failure in %s", name, exc_info=True)
            return _error_result(str(exc))

    async def _create_from_template(self, arguments: Dict[str, Any]) -> CallToolResult:
        language = Language.parse(arguments["language"])
        code = arguments.get("code") or TEMPLATES[language]
        raw_dependencies = arguments.get("dependencies") or {}
        dependencies = {
            str(name): "" if version is None else str(version)
            for name, version in raw_dependencies.items()
        }
        server_id = await self.manager.create(code, language, dependencies or None)
        if arguments.get("code"):
            message = f"Server created from custom {language.value} code"
        else:
            message = f"Server created from the {language.value} template"
        return _json_result({"serverId": server_id, "message": message})

    async def _execute_tool(self, arguments: Dict[str, Any]) -> CallToolResult:
        return await self.manager.call_tool(
            arguments["serverId"], arguments["toolName"], arguments.get("args") or {}
        )

    async def _get_server_tools(self, arguments: Dict[str, Any]) -> CallToolResult:
        tools = await self.manager.get_tools(arguments["serverId"])
        return _json_result(
            {
                "tools": [
                    tool.model_dump(mode="json", by_alias=True, exclude_none=True)
                    for tool in tools
                ]
            }
        )

    async def _update_server(self, arguments: Dict[str, Any]) -> CallToolResult:
        server_id = arguments["serverId"]
        new_server_id = await self.manager.update(server_id, arguments["code"])
        return _json_result(
            {
                "success": True,
                "serverId": new_server_id,
                "message": f"Server {server_id} updated and restarted as {new_server_id}",
            }
        )

    async def _delete_server(self, arguments: Dict[str, Any]) -> CallToolResult:
        return _json_result(await self.manager.delete(arguments["serverId"]))

    async def _list_servers(self, arguments: Dict[str, Any]) -> CallToolResult:
        return _json_result({"servers": self.manager.list_servers()})

    async def _save_server(self, arguments: Dict[str, Any]) -> CallToolResult:
        server_id = arguments["serverId"]
        name = arguments["name"]
        saved_id = await self.store.save(
            server_id, name, saved_id=arguments.get("savedServerId")
        )
        return _json_result(
            {
                "savedServerId": saved_id,
                "message": f"Server {server_id} saved as {name!r}",
            }
        )

    async def _list_saved_servers(self, arguments: Dict[str, Any]) -> CallToolResult:
        return _json_result({"savedServers": await self.store.list()})

    async def _load_saved_server(self, arguments: Dict[str, Any]) -> CallToolResult:
        server_id = await self.store.load(arguments["savedServerId"])
        return _json_result(
            {
                "serverId": server_id,
                "message": f"Saved server loaded as new server: {server_id}",
            }
        )

    async def _delete_saved_server(self, arguments: Dict[str, Any]) -> CallToolResult:
        saved_id = arguments["savedServerId"]
        await self.store.delete(saved_id)
        return _json_result(
            {"success": True, "message": f"Saved server {saved_id} deleted from disk"}
        )


def create_app(dispatcher: ToolDispatcher) -> Server:
    app: Server = Server(APP_NAME, version=APP_VERSION)
    app.list_tools()(dispatcher.list_tools)
    app.call_tool()(dispatcher.call_tool)
    return app


# =============================================================================
# Entry point
# =============================================================================


async def main() -> None:
    logging.basicConfig(level=os.environ.get("MCP_CREATE_LOG_LEVEL", "INFO"))
    logger.info("Starting MCP Create Server...")

    manager = ServerManager()
    await manager.builder.prepare()
    store = SavedServerStore(manager)
    app = create_app(ToolDispatcher(manager, store))

    main_task = asyncio.current_task()
    loop = asyncio.get_running_loop()

    def _exit_now() -> None:
        logger.info("MCP Create Server exiting")
        logging.shutdown()
        os._exit(0)

    def _handle_signal(signum: int) -> None:
        logger.info("Shutting down gracefully (signal %s)...", signum)
        manager.shutdown()
        if main_task is not None:
            main_task.cancel()
        # The stdin reader thread blocks on readline until the client hangs up,
        # so a cancelled serve loop cannot be joined; exit once closes are issued.
        loop.call_later(SHUTDOWN_GRACE_SECONDS, _exit_now)

    for sig_name in ("SIGTERM", "SIGINT", "SIGHUP"):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        # add_signal_handler is unavailable on Windows event loops.
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _handle_signal, sig)

    try:
        async with stdio_server() as (read_stream, write_stream):
            logger.info("MCP Create Server running on stdio")
            await app.run(
                read_stream, write_stream, app.create_initialization_options()
            )
    except asyncio.CancelledError:
        logger.info("MCP Create Server stopped")
    except Exception as e:
        logging.error("Fatal error in main loop: %s", e)
        logging.exception("Full traceback:")
        raise
    finally:
        manager.shutdown()


def run() -> None:
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    # stdio_client async generators are sometimes finalised from another task
    # during shutdown; anyio reports that as a cancel scope error.
    def _custom_exception_handler(
        loop: asyncio.AbstractEventLoop, context: Dict[str, Any]
    ) -> None:
        message = context.get("message", "")
        exception = context.get("exception")

        if "error occurred during closing of asynchronous generator" in message:
            asyncgen = context.get("asyncgen")
            if asyncgen and "stdio_client" in str(asyncgen):
                logger.debug("Suppressed benign stdio_client cleanup error: %s", message)
                return

        if exception and "exit cancel scope in a different task" in str(exception):
            logger.debug("Suppressed benign cancel scope cleanup error: %s", exception)
            return

        loop.default_exception_handler(context)

    loop = asyncio.new_event_loop()
    try:
        loop.set_exception_handler(_custom_exception_handler)
        asyncio.set_event_loop(loop)
        loop.run_until_complete(main())
    except KeyboardInterrupt:
        sys.exit(0)
    finally:
        loop.close()


if __name__ == "__main__":
    run()
