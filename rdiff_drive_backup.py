#!/usr/bin/env python3
"""rdiff-drive-backup: mount a backup drive, run rdiff-backup against it, and dismount it again."""
from __future__ import annotations

import argparse
import asyncio
import enum
import json
import os
import posixpath
import secrets
import shutil
import signal
import sys
import threading
import time
from contextlib import ExitStack
from typing import TYPE_CHECKING, Callable, Mapping, NamedTuple, Protocol, Sequence

if TYPE_CHECKING:
    from types import FrameType

APPNAME = "rdiff-drive-backup"
VERBOSE = False

DEFAULT_TIMEOUT = 60.0
MOCK_MOUNT_DELAY = 5.0
MAX_LABEL_LENGTH = 32
FAT_LABEL_LENGTH = 11
DEFAULT_PRUNE_AGE = "3M"
DEFAULT_TOOL = "v210a1"
REPOSITORY_MARKER = "rdiff-backup-data"
WSL_EXECUTABLE = "wsl"
MOUNT_POINT_PREFIX = "/mnt/rdiff-drive-backup"
BRIDGE_MOUNT_OPTIONS = "metadata,uid=0,gid=0,umask=022"
NOTIFICATION_TITLE = "Backup failed"
RECOMMENDED_ACTION = (
    "Inspect the scheduled job output for details: "
    "Get-ScheduledJob | Get-Job | Receive-Job -Keep"
)

COLORS = {
    "green": "\033[92m",
    "magenta": "\033[95m",
    "yellow": "\033[93m",
    "red": "\033[91m",
    "orange": "\033[33m",
}


def style(text: str, color: str | None = None, *, bold: bool = False) -> str:
    """Return styled text."""
    color_code = COLORS.get(color, "")  # type: ignore[arg-type]
    bold_code = "\033[1m" if bold else ""
    reset_code = "\033[0m"
    return f"{bold_code}{color_code}{text}{reset_code}"


def sanitize(s: str) -> str:
    """Return a sanitized version of the string."""
    return s.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def log(message: str, level: str = "info") -> None:
    """Log a message with the specified log level."""
    levels = {"info": "", "warning": "[WARNING] ", "error": "[ERROR] "}
    output = sys.stderr if level in {"warning", "error"} else sys.stdout
    message = sanitize(message)
    print(f"{style(APPNAME, bold=True)}: {levels[level]}{message}", file=output)


def log_info(message: str) -> None:
    """Log an info message to stdout."""
    log(message, "info")


def log_warn(message: str) -> None:
    """Log a warning message to stderr."""
    log(style(message, "orange"), "warning")


def log_error(message: str) -> None:
    """Log an error message to stderr."""
    log(style(message, "red", bold=True), "error")


def log_info_cmd(cmd: str | Sequence[str]) -> None:
    """Log the command that is about to run."""
    if not isinstance(cmd, str):
        cmd = " ".join(_quote(part) for part in cmd)
    log_info(style(cmd, "green"))


def _quote(part: str) -> str:
    return f'"{part}"' if (" " in part or not part) else part


def terminate_script(
    _signal_number: int,
    _frame: FrameType | None,
) -> None:
    """Terminate the script when CTRL+C is pressed."""
    log_info("SIGINT caught.")
    sys.exit(1)


# -----------------------------------------------------------------------------
# Command execution
# -----------------------------------------------------------------------------


class CmdResult(NamedTuple):
    """Command result."""

    stdout: str
    stderr: str
    returncode: int


async def async_run_cmd(
    cmd: str | Sequence[str],
    *,
    stream_output: bool = False,
) -> CmdResult:
    """Run a command, through the shell for strings and directly for argument lists."""
    echo = VERBOSE or stream_output
    if VERBOSE:
        shown = cmd if isinstance(cmd, str) else " ".join(_quote(p) for p in cmd)
        log_info(f"Running command: {style(shown, 'green', bold=True)}")

    try:
        if isinstance(cmd, str):
            process = await asyncio.create_subprocess_shell(
                cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
    except FileNotFoundError as e:
        missing = cmd if isinstance(cmd, str) else cmd[0]
        log_error(f"Command not found: {e.filename or missing}")
        return CmdResult("", str(e), 127)

    # Should not be None because of asyncio.subprocess.PIPE
    assert process.stdout is not None, "Process stdout is None"
    assert process.stderr is not None, "Process stderr is None"

    stdout, stderr = await asyncio.gather(
        read_stream(process.stdout, log_info, "magenta", echo=echo),
        read_stream(process.stderr, log_info, "red", echo=echo),
    )

    await process.wait()
    assert process.returncode is not None, "Process has not returned"

    if VERBOSE and process.returncode != 0:
        msg = style(str(process.returncode), "red", bold=True)
        log_error(f"Command exit code: {msg}")
    return CmdResult(stdout, stderr, process.returncode)


async def read_stream(
    stream: asyncio.StreamReader,
    callback: Callable[[str], None],
    color: str,
    *,
    echo: bool = False,
) -> str:
    """Read each line from the stream and pass it to the callback."""
    output = []
    while True:
        line = await stream.readline()
        if line:
            line_str = line.decode("utf-8", "replace").rstrip()
            output.append(line_str)
            if echo:
                callback(f"Command output: {style(line_str, color, bold=True)}")
        else:
            break
    return "\n".join(output)


def run_cmd(
    cmd: str | Sequence[str],
    *,
    stream_output: bool = False,
) -> CmdResult:
    """Synchronously run a command."""
    return asyncio.run(async_run_cmd(cmd, stream_output=stream_output))


Runner = Callable[..., CmdResult]


# -----------------------------------------------------------------------------
# Signal wait primitive
# -----------------------------------------------------------------------------


class WaitResult(enum.Enum):
    """Outcome of waiting on a named signal."""

    RECEIVED = "received"
    TIMED_OUT = "timed out"


class SignalNames(NamedTuple):
    """Per-run signal names for the two asynchronous drive operations."""

    mount: str
    dismount: str


def new_run_token() -> str:
    """Return a random token that makes this run's signal names unique."""
    return secrets.token_hex(8)


def signal_names(run_token: str) -> SignalNames:
    """Return the mount and dismount signal names for a run."""
    return SignalNames(
        mount=f"{APPNAME}-mount-{run_token}",
        dismount=f"{APPNAME}-dismount-{run_token}",
    )


class SignalNamespace:
    """A namespace of named one-shot signals that callers can block on.

    A signal raised before anybody waits on it stays raised, so a
    collaborator that finishes early is never missed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, threading.Event] = {}

    def _event(self, name: str) -> threading.Event:
        with self._lock:
            return self._events.setdefault(name, threading.Event())

    def signal(self, name: str) -> None:
        """Raise the named signal."""
        self._event(name).set()

    def wait(self, name: str, timeout: float) -> WaitResult:
        """Block until the named signal is raised or ``timeout`` seconds pass."""
        received = self._event(name).wait(timeout)
        with self._lock:
            self._events.pop(name, None)
        return WaitResult.RECEIVED if received else WaitResult.TIMED_OUT


SIGNALS = SignalNamespace()


# -----------------------------------------------------------------------------
# Drive collaborators
# -----------------------------------------------------------------------------


class DriveMounter(Protocol):
    """Mounts and dismounts the destination drive, signalling completion by name."""

    def mount(self, drive_id: str, label: str, signal_name: str) -> None:
        ...

    def dismount(self, letter: str, signal_name: str) -> None:
        ...


class DriveQuery(Protocol):
    """Answers questions about the live volume set."""

    def exists_by_label(self, label: str) -> bool:
        ...

    def exists_by_letter(self, letter: str) -> bool:
        ...

    def letter_by_label(self, label: str) -> str:
        ...


class MockDriveMounter:
    """Pretends to mount: sleeps in the background, then signals success."""

    def __init__(
        self,
        signals: SignalNamespace = SIGNALS,
        delay: float = MOCK_MOUNT_DELAY,
    ) -> None:
        self.signals = signals
        self.delay = delay
        self.calls: list[tuple[str, ...]] = []

    def _signal_later(self, signal_name: str) -> None:
        def _run() -> None:
            time.sleep(self.delay)
            self.signals.signal(signal_name)

        threading.Thread(target=_run, name=signal_name, daemon=True).start()

    def mount(self, drive_id: str, label: str, signal_name: str) -> None:
        """Start a (mock) mount of ``drive_id`` under ``label``."""
        self.calls.append(("mount", drive_id, label))
        log_info(f"Mock mount of {style(drive_id, bold=True)} as '{label}'.")
        self._signal_later(signal_name)

    def dismount(self, letter: str, signal_name: str) -> None:
        """Start a (mock) dismount of ``letter``."""
        self.calls.append(("dismount", letter))
        log_info(f"Mock dismount of {style(letter, bold=True)}.")
        self._signal_later(signal_name)


def _ps_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PowerShellDriveQuery:
    """Query Windows volumes through ``Get-Volume``."""

    def __init__(self, runner: Runner = run_cmd) -> None:
        self.runner = runner

    def _powershell(self, script: str) -> CmdResult:
        return self.runner(
            ["powershell", "-NoProfile", "-NonInteractive", "-Command", script],
        )

    def _count(self, selector: str) -> int:
        result = self._powershell(
            f"@(Get-Volume {selector} -ErrorAction SilentlyContinue).Count",
        )
        try:
            return int(result.stdout.strip() or 0)
        except ValueError:
            log_warn(f"Unexpected Get-Volume output: {result.stdout!r}")
            return 0

    def exists_by_label(self, label: str) -> bool:
        """Return whether a volume with this label is present."""
        return self._count(f"-FileSystemLabel {_ps_literal(label)}") > 0

    def exists_by_letter(self, letter: str) -> bool:
        """Return whether a volume is present at this drive letter."""
        return self._count(f"-DriveLetter {_ps_literal(letter.rstrip(':'))}") > 0

    def letter_by_label(self, label: str) -> str:
        """Return the drive letter (``E:``) of the labelled volume, or ``""``."""
        result = self._powershell(
            f"(Get-Volume -FileSystemLabel {_ps_literal(label)} "
            "-ErrorAction SilentlyContinue | Select-Object -First 1).DriveLetter",
        )
        letter = result.stdout.strip()
        return f"{letter}:" if letter else ""


class FindmntDriveQuery:
    """Query labelled block devices on POSIX hosts; the "letter" is the mount target."""

    def __init__(self, runner: Runner = run_cmd) -> None:
        self.runner = runner

    def exists_by_label(self, label: str) -> bool:
        """Return whether a device with this label is currently mounted."""
        return self.runner(["findmnt", "-n", "--source", f"LABEL={label}"]).returncode == 0

    def exists_by_letter(self, letter: str) -> bool:
        """Return whether something is mounted at ``letter``."""
        return os.path.ismount(letter)

    def letter_by_label(self, label: str) -> str:
        """Return the mount target of the labelled device, or ``""``."""
        result = self.runner(["findmnt", "-n", "-o", "TARGET", "--source", f"LABEL={label}"])
        if result.returncode != 0:
            return ""
        lines = result.stdout.strip().splitlines()
        return lines[0].strip() if lines else ""


def default_drive_query(runner: Runner = run_cmd) -> DriveQuery:
    """Return the drive query implementation for this platform."""
    if sys.platform == "win32":
        return PowerShellDriveQuery(runner)
    return FindmntDriveQuery(runner)


# -----------------------------------------------------------------------------
# Notifications
# -----------------------------------------------------------------------------


class Notifier(Protocol):
    """Delivers a message to the current desktop user."""

    def notify(self, title: str, body: str) -> None:
        ...


def parse_active_session(query_user_output: str) -> str | None:
    """Return the id of the active session in ``query user`` output."""
    for line in query_user_output.splitlines()[1:]:
        tokens = line.lstrip(">").split()
        if "Active" in tokens:
            idx = tokens.index("Active")
            if idx > 0 and tokens[idx - 1].isdigit():
                return tokens[idx - 1]
    return None


class DesktopNotifier:
    """Send notifications to whichever desktop session is active.

    Without an active session the notification is dropped and a warning is
    logged instead. Delivery problems are never raised to the caller.
    """

    def __init__(
        self,
        runner: Runner = run_cmd,
        platform: str = sys.platform,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.runner = runner
        self.platform = platform
        self.environ = os.environ if environ is None else environ

    def active_session(self) -> str | None:
        """Return an identifier of the active desktop session, if any."""
        if self.platform == "win32":
            result = self.runner(["query", "user"])
            # query user exits 1 when nobody is logged on
            return parse_active_session(result.stdout) if result.stdout else None
        if any(
            self.environ.get(var)
            for var in ("DISPLAY", "WAYLAND_DISPLAY", "DBUS_SESSION_BUS_ADDRESS")
        ):
            return self.environ.get("XDG_SESSION_ID", "desktop")
        return None

    def notify(self, title: str, body: str) -> None:
        """Send ``title`` and ``body`` to the active session."""
        session = self.active_session()
        if session is None:
            log_warn(f"No active desktop session - notification dropped: {title}: {body}")
            return

        if self.platform == "win32":
            cmd = ["msg", session, "/TIME:3600", f"{title}\n{body}"]
        elif shutil.which("notify-send"):
            cmd = ["notify-send", "--urgency=critical", "--app-name", APPNAME, title, body]
        else:
            log_warn(f"notify-send not available - notification dropped: {title}: {body}")
            return

        result = self.runner(cmd)
        if result.returncode != 0:
            log_warn(f"Could not deliver notification (exit code {result.returncode}): {result.stderr}")


# -----------------------------------------------------------------------------
# Tool registry
# -----------------------------------------------------------------------------


class ApiDialect(enum.Enum):
    """Command-line dialect of an rdiff-backup build."""

    OLD = "old"  # flag-style: --remove-older-than, --verify
    NEW = "new"  # subcommand-style: backup, remove increments, verify


class Environment(enum.Enum):
    """Where an rdiff-backup build executes."""

    NATIVE = "native"
    SECONDARY = "secondary"  # inside WSL


class ToolDescriptor(NamedTuple):
    """How to run one rdiff-backup build."""

    key: str
    executable: str
    leading_args: tuple[str, ...] = ()
    always_force: bool = False
    dialect: ApiDialect = ApiDialect.NEW
    environment: Environment = Environment.NATIVE


DEFAULT_TOOL_REGISTRY: list[dict] = [
    {
        "key": "v205",
        "executable": "C:/Tools/rdiff-backup-2.0.5/rdiff-backup.exe",
        "dialect": "old",
        "environment": "native",
    },
    {
        # This build reports the server process as still alive after a failure.
        "key": "v210a1",
        "executable": "C:/Tools/rdiff-backup-2.1.0a1/rdiff-backup.exe",
        "always_force": True,
        "dialect": "new",
        "environment": "native",
    },
    {
        "key": "wsl-v204",
        "executable": WSL_EXECUTABLE,
        "leading_args": ["-e", "/usr/bin/rdiff-backup"],
        "dialect": "old",
        "environment": "secondary",
    },
    {
        "key": "wsl-v224",
        "executable": WSL_EXECUTABLE,
        "leading_args": ["-e", "/opt/rdiff-backup-2.2.4/bin/rdiff-backup"],
        "dialect": "new",
        "environment": "secondary",
    },
]


def load_tool_registry(records: Sequence[dict]) -> dict[str, ToolDescriptor]:
    """Turn registry records into descriptors, validating them on the way."""
    registry: dict[str, ToolDescriptor] = {}
    for record in records:
        if not isinstance(record, dict):
            msg = f"Tool registry entry {record!r} is not an object"
            raise ValueError(msg)  # noqa: TRY004
        try:
            key = record["key"]
            descriptor = ToolDescriptor(
                key=key,
                executable=record["executable"],
                leading_args=tuple(record.get("leading_args", ())),
                always_force=bool(record.get("always_force", False)),
                dialect=ApiDialect(record.get("dialect", "new")),
                environment=Environment(record.get("environment", "native")),
            )
        except KeyError as e:
            msg = f"Tool registry entry {record!r} is missing {e}"
            raise ValueError(msg) from e
        if key in registry:
            msg = f"Duplicate tool registry key: {key}"
            raise ValueError(msg)
        registry[key] = descriptor

    missing = {env.value for env in Environment} - {
        d.environment.value for d in registry.values()
    }
    if missing:
        msg = f"Tool registry has no entry for environment(s): {', '.join(sorted(missing))}"
        raise ValueError(msg)
    return registry


def read_registry_file(path: str) -> list[dict]:
    """Read registry records from a JSON file."""
    with open(path, encoding="utf-8") as f:
        records = json.load(f)
    if not isinstance(records, list):
        msg = f"{path} must contain a JSON list of tool records"
        raise ValueError(msg)
    return records


# -----------------------------------------------------------------------------
# Backup tool invocation
# -----------------------------------------------------------------------------


class Operation(enum.Enum):
    """rdiff-backup operations this tool issues."""

    BACKUP = "backup"
    PRUNE = "prune"
    VERIFY = "verify"


class ToolParams(NamedTuple):
    """Arguments for one rdiff-backup invocation."""

    destination: str
    source: str = ""
    compatible_timestamps: bool = False
    include_list: str | None = None
    older_than: str = DEFAULT_PRUNE_AGE
    force: bool = False


# Always passed before any include list; some Windows builds mis-parse the options otherwise.
NATIVE_BACKUP_FLAGS = ("--no-acls", "--no-eas")


def build_tool_command(
    operation: Operation,
    params: ToolParams,
    tool: ToolDescriptor,
) -> list[str]:
    """Return the rdiff-backup command line for ``operation``."""
    cmd = [tool.executable, *tool.leading_args]

    if params.force or tool.always_force or operation is Operation.PRUNE:
        cmd.append("--force")
    if params.compatible_timestamps or tool.environment is Environment.SECONDARY:
        cmd.append("--use-compatible-timestamps")

    old = tool.dialect is ApiDialect.OLD
    if operation is Operation.PRUNE:
        if old:
            cmd += ["--remove-older-than", params.older_than]
        else:
            cmd += ["remove", "increments", "--older-than", params.older_than]
        cmd.append(params.destination)
    elif operation is Operation.VERIFY:
        cmd += ["--verify"] if old else ["verify"]
        cmd.append(params.destination)
    else:
        if not old:
            cmd.append("backup")
        if tool.environment is Environment.NATIVE:
            cmd += NATIVE_BACKUP_FLAGS
        if params.include_list:
            flag = "--include-globbing-filelist" if old else "--include-filelist"
            cmd += [flag, params.include_list]
        cmd += [params.source, params.destination]
    return cmd


def invoke_tool(
    operation: Operation,
    params: ToolParams,
    tool: ToolDescriptor,
    runner: Runner = run_cmd,
) -> int:
    """Run rdiff-backup and return its exit code."""
    cmd = build_tool_command(operation, params, tool)
    log_info(style(f"Running {operation.value} with {tool.key}:", bold=True))
    log_info_cmd(cmd)
    return runner(cmd, stream_output=True).returncode


# -----------------------------------------------------------------------------
# WSL bridge
# -----------------------------------------------------------------------------


class PathState(enum.Enum):
    """What, if anything, lives at a path."""

    MISSING = "missing"
    DIRECTORY = "directory"
    OTHER = "other"


class BridgeError(Exception):
    """A WSL bridge command failed."""


class WslBridge:
    """Expose a host drive inside WSL and translate paths between the two."""

    def __init__(
        self,
        runner: Runner = run_cmd,
        distribution: str | None = None,
        mount_options: str = BRIDGE_MOUNT_OPTIONS,
    ) -> None:
        self.runner = runner
        self.distribution = distribution
        self.mount_options = mount_options

    def _wsl(self, *args: str, root: bool = False) -> CmdResult:
        cmd = [WSL_EXECUTABLE]
        if self.distribution:
            cmd += ["-d", self.distribution]
        if root:
            cmd += ["-u", "root"]
        cmd += ["-e", *args]
        return self.runner(cmd)

    def path_state(self, path: str) -> PathState:
        if self._wsl("test", "-e", path).returncode != 0:
            return PathState.MISSING
        if self._wsl("test", "-d", path).returncode == 0:
            return PathState.DIRECTORY
        return PathState.OTHER

    def create_mount_point(self, path: str) -> None:
        result = self._wsl("mkdir", "-p", path, root=True)
        if result.returncode != 0:
            msg = f"mkdir {path} exited with {result.returncode}: {result.stderr.strip()}"
            raise BridgeError(msg)

    def bridge_mount(self, letter: str, mount_point: str) -> None:
        result = self._wsl(
            "mount", "-t", "drvfs", letter, mount_point, "-o", self.mount_options,
            root=True,
        )
        if result.returncode != 0:
            msg = f"mount {letter} on {mount_point} exited with {result.returncode}: {result.stderr.strip()}"
            raise BridgeError(msg)

    def is_mounted(self, mount_point: str) -> bool:
        return self._wsl("mountpoint", "-q", mount_point).returncode == 0

    def unmount(self, mount_point: str) -> None:
        result = self._wsl("umount", mount_point, root=True)
        if result.returncode != 0:
            msg = f"umount {mount_point} exited with {result.returncode}: {result.stderr.strip()}"
            raise BridgeError(msg)

    def remove_mount_point(self, mount_point: str) -> None:
        result = self._wsl("rmdir", mount_point, root=True)
        if result.returncode != 0:
            msg = f"rmdir {mount_point} exited with {result.returncode}: {result.stderr.strip()}"
            raise BridgeError(msg)

    def to_secondary(self, host_path: str) -> str:
        """Translate a Windows path into its WSL form."""
        return self._translate("-u", host_path)

    def to_host(self, path: str) -> str:
        """Translate a WSL path into its Windows form."""
        return self._translate("-w", path)

    def _translate(self, direction: str, path: str) -> str:
        result = self._wsl("wslpath", "-a", direction, path)
        translated = result.stdout.strip()
        if result.returncode != 0 or not translated:
            msg = f"wslpath {direction} {path!r} exited with {result.returncode}: {result.stderr.strip()}"
            raise BridgeError(msg)
        return translated


def mount_point_for(label: str, prefix: str = MOUNT_POINT_PREFIX) -> str:
    """Return the WSL mount point used for the drive labelled ``label``."""
    return posixpath.join(prefix, label)


# -----------------------------------------------------------------------------
# Requests, failures and outcomes
# -----------------------------------------------------------------------------


class BackupRequest(NamedTuple):
    """Everything one backup run needs to know."""

    label: str
    source: str
    drive_id: str
    drive_label: str
    dest_path: str
    compatible_timestamps: bool | None = None
    include_list: str | None = None
    prune_age: str = DEFAULT_PRUNE_AGE
    backup_tool: str = DEFAULT_TOOL
    prune_tool: str | None = None

    @property
    def prune_tool_key(self) -> str:
        return self.prune_tool or self.backup_tool


class ErrorCategory(enum.Enum):
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    PATH_RESOLUTION = "path resolution"
    ENVIRONMENT_BRIDGE = "environment bridge"
    TOOL_INVOCATION = "tool invocation"
    RESIDUAL_STATE = "residual state"
    UNEXPECTED = "unexpected"


class FailureKind(enum.Enum):
    """Everything that can go wrong during a run, with its category."""

    INVALID_REQUEST = ErrorCategory.VALIDATION, "InvalidRequest"
    ALREADY_EXISTS = ErrorCategory.VALIDATION, "AlreadyExists"
    UNKNOWN_TOOL_VERSION = ErrorCategory.VALIDATION, "UnknownToolVersion"
    ENVIRONMENT_MISMATCH = ErrorCategory.VALIDATION, "EnvironmentMismatch"
    MOUNT_TIMEOUT = ErrorCategory.TIMEOUT, "MountTimeout"
    DISMOUNT_TIMEOUT = ErrorCategory.TIMEOUT, "DismountTimeout"
    DRIVE_NOT_FOUND = ErrorCategory.PATH_RESOLUTION, "DriveNotFound"
    DESTINATION_NOT_FOUND = ErrorCategory.PATH_RESOLUTION, "DestinationNotFound"
    UNSUPPORTED_ENVIRONMENT = ErrorCategory.PATH_RESOLUTION, "UnsupportedEnvironment"
    NOT_A_DIRECTORY = ErrorCategory.ENVIRONMENT_BRIDGE, "NotADirectory"
    MOUNT_BRIDGE_FAILED = ErrorCategory.ENVIRONMENT_BRIDGE, "MountBridgeFailed"
    PATH_TRANSLATION_FAILED = ErrorCategory.ENVIRONMENT_BRIDGE, "PathTranslationFailed"
    UNMOUNT_BRIDGE_FAILED = ErrorCategory.ENVIRONMENT_BRIDGE, "UnmountBridgeFailed"
    PRUNE_FAILED = ErrorCategory.TOOL_INVOCATION, "PruneFailed"
    BACKUP_FAILED = ErrorCategory.TOOL_INVOCATION, "BackupFailed"
    RESIDUAL_MOUNT = ErrorCategory.RESIDUAL_STATE, "ResidualMount"
    UNEXPECTED_ERROR = ErrorCategory.UNEXPECTED, "UnexpectedError"

    @property
    def category(self) -> ErrorCategory:
        return self.value[0]

    def __str__(self) -> str:
        return self.value[1]


class Failure(NamedTuple):
    """A failure detected by one step of the run."""

    kind: FailureKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class RunStatus(enum.Enum):
    SUCCESS = "success"
    PRUNE_FAILED_CONTINUED = "prune failed, backup succeeded"
    DISMOUNT_TIMED_OUT = "dismount timed out"
    VALIDATION_FAILED = "validation failed"
    MOUNT_TIMED_OUT = "mount timed out"
    PATH_RESOLUTION_FAILED = "path resolution failed"
    BACKUP_FAILED = "backup failed"

    @property
    def is_fatal(self) -> bool:
        return self not in {
            RunStatus.SUCCESS,
            RunStatus.PRUNE_FAILED_CONTINUED,
            RunStatus.DISMOUNT_TIMED_OUT,
        }


class VerifyResult(enum.Enum):
    CORRUPTED = "Corrupted"
    LIKELY_INTACT = "LikelyIntact"


class RunOutcome(NamedTuple):
    """Terminal state of one run."""

    status: RunStatus
    failure: Failure | None = None
    verify: VerifyResult | None = None
    side_reports: tuple[Failure, ...] = ()

    @property
    def exit_code(self) -> int:
        return 1 if self.status.is_fatal else 0


class RunReport:
    """Collects what happens during a run and turns it into a RunOutcome once."""

    def __init__(self) -> None:
        self.failure: Failure | None = None
        self.verify: VerifyResult | None = None
        self.side_reports: list[Failure] = []
        self._outcome: RunOutcome | None = None

    def fail(self, failure: Failure) -> None:
        if self.failure is None:
            self.failure = failure

    def report(self, failure: Failure) -> None:
        self.side_reports.append(failure)

    def finalize(self) -> RunOutcome:
        if self._outcome is not None:
            msg = "Run outcome was already finalized"
            raise RuntimeError(msg)
        self._outcome = RunOutcome(
            status=self._status(),
            failure=self.failure,
            verify=self.verify,
            side_reports=tuple(self.side_reports),
        )
        return self._outcome

    def _status(self) -> RunStatus:
        if self.failure is not None:
            category = self.failure.kind.category
            if category is ErrorCategory.VALIDATION:
                return RunStatus.VALIDATION_FAILED
            if self.failure.kind is FailureKind.MOUNT_TIMEOUT:
                return RunStatus.MOUNT_TIMED_OUT
            if self.failure.kind is FailureKind.BACKUP_FAILED:
                return RunStatus.BACKUP_FAILED
            return RunStatus.PATH_RESOLUTION_FAILED
        kinds = {f.kind for f in self.side_reports}
        if FailureKind.DISMOUNT_TIMEOUT in kinds:
            return RunStatus.DISMOUNT_TIMED_OUT
        if FailureKind.PRUNE_FAILED in kinds:
            return RunStatus.PRUNE_FAILED_CONTINUED
        return RunStatus.SUCCESS


class BackupRunError(Exception):
    """Raised when a run ends in a fatal failure."""

    def __init__(self, outcome: RunOutcome) -> None:
        self.outcome = outcome
        super().__init__(str(outcome.failure))


class MountOutcome(NamedTuple):
    """Paths resolved after the destination drive was mounted."""

    letter: str
    tool_dest: str
    host_dest: str
    tool_source: str
    tool_include_list: str | None = None
    mount_point: str | None = None
    mount_point_existed: bool = False


class RunConfig(NamedTuple):
    """Settings for one run; built once and passed down."""

    registry: dict[str, ToolDescriptor]
    timeout: float = DEFAULT_TIMEOUT
    mount_point_prefix: str = MOUNT_POINT_PREFIX
    bridge_mount_options: str = BRIDGE_MOUNT_OPTIONS
    wsl_distribution: str | None = None
    repository_marker: str = REPOSITORY_MARKER
    notification_title: str = NOTIFICATION_TITLE
    recommended_action: str = RECOMMENDED_ACTION


def default_config() -> RunConfig:
    """Return a RunConfig using the built-in tool registry."""
    return RunConfig(registry=load_tool_registry(DEFAULT_TOOL_REGISTRY))


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class Orchestrator:
    """Runs validate, mount, resolve, prune, backup and cleanup for one request.

    Steps return a ``Failure`` (or ``None``) instead of raising. Resources are
    registered on an ``ExitStack`` as soon as they are acquired, so the bridge
    mount and the drive are released on every exit path.
    """

    def __init__(
        self,
        config: RunConfig,
        mounter: DriveMounter,
        drive_query: DriveQuery,
        notifier: Notifier,
        *,
        signals: SignalNamespace = SIGNALS,
        bridge: WslBridge | None = None,
        runner: Runner = run_cmd,
        run_token: str | None = None,
    ) -> None:
        self.config = config
        self.mounter = mounter
        self.drive_query = drive_query
        self.notifier = notifier
        self.signals = signals
        self.runner = runner
        self.bridge = bridge or WslBridge(
            runner,
            distribution=config.wsl_distribution,
            mount_options=config.bridge_mount_options,
        )
        self.signal_names = signal_names(run_token or new_run_token())

    def run(self, request: BackupRequest) -> RunOutcome:
        """Perform one complete run for ``request``.

        An exception escaping a step is notified like any other fatal failure
        and re-raised as ``BackupRunError`` once cleanup has run.
        """
        report = RunReport()
        error: Exception | None = None
        log_info(style(f"Starting backup '{request.label}'...", "yellow"))
        with ExitStack() as cleanup:
            try:
                failure = self._run_steps(request, report, cleanup)
            except Exception as e:  # noqa: BLE001
                error = e
                failure = Failure(FailureKind.UNEXPECTED_ERROR, f"{type(e).__name__}: {e}")
            if failure is not None:
                report.fail(failure)
                log_error(str(failure))
                self._notify(request, failure.message, with_action=True)
        outcome = report.finalize()
        if outcome.status.is_fatal:
            log_error(f"Backup '{request.label}' {outcome.status.value}.")
        else:
            log_info(style(f"Backup '{request.label}' finished: {outcome.status.value}.", "magenta"))
        if error is not None:
            raise BackupRunError(outcome) from error
        return outcome

    def _run_steps(
        self,
        request: BackupRequest,
        report: RunReport,
        cleanup: ExitStack,
    ) -> Failure | None:
        failure = self.validate(request)
        if failure is not None:
            return failure
        backup_tool = self.config.registry[request.backup_tool]
        prune_tool = self.config.registry[request.prune_tool_key]

        failure = self.mount(request)
        if failure is not None:
            return failure

        letter = self.drive_query.letter_by_label(request.drive_label)
        if not letter:
            return Failure(
                FailureKind.DRIVE_NOT_FOUND,
                f"Drive '{request.drive_label}' was mounted but no drive letter could be found for it.",
            )
        log_info(f"Drive '{request.drive_label}' is mounted at {style(letter, bold=True)}")
        cleanup.callback(self.dismount, request, letter, report)

        paths, failure = self.resolve_paths(request, letter, backup_tool, cleanup, report)
        if failure is not None:
            return failure
        assert paths is not None

        failure = self.check_destination(paths)
        if failure is not None:
            return failure

        self.prune(request, paths, prune_tool, report)
        return self.backup(request, paths, backup_tool, report)

    def validate(self, request: BackupRequest) -> Failure | None:
        """Check the request before anything is mounted."""
        if not request.label.strip():
            return Failure(FailureKind.INVALID_REQUEST, "The backup label must not be empty.")
        if not request.drive_label.strip():
            return Failure(FailureKind.INVALID_REQUEST, "The drive label must not be empty.")
        if len(request.drive_label) > MAX_LABEL_LENGTH:
            return Failure(
                FailureKind.INVALID_REQUEST,
                f"The drive label '{request.drive_label}' is longer than {MAX_LABEL_LENGTH} characters.",
            )
        if len(request.drive_label) > FAT_LABEL_LENGTH:
            log_warn(
                f"Drive label '{request.drive_label}' is longer than {FAT_LABEL_LENGTH} characters"
                " and will be truncated on FAT file systems.",
            )

        if self.drive_query.exists_by_label(request.drive_label):
            return Failure(
                FailureKind.ALREADY_EXISTS,
                f"A drive labelled '{request.drive_label}' already exists - refusing to mount over it.",
            )

        for key in (request.backup_tool, request.prune_tool_key):
            if key not in self.config.registry:
                known = ", ".join(sorted(self.config.registry))
                return Failure(
                    FailureKind.UNKNOWN_TOOL_VERSION,
                    f"Unknown rdiff-backup version '{key}' (known: {known}).",
                )

        backup_env = self.config.registry[request.backup_tool].environment
        prune_env = self.config.registry[request.prune_tool_key].environment
        if backup_env is not prune_env:
            return Failure(
                FailureKind.ENVIRONMENT_MISMATCH,
                f"Backup tool '{request.backup_tool}' runs in the {backup_env.value} environment"
                f" but prune tool '{request.prune_tool_key}' runs in the {prune_env.value} environment.",
            )
        return None

    def mount(self, request: BackupRequest) -> Failure | None:
        """Mount the destination drive and wait until that is confirmed."""
        log_info(f"Mounting {style(request.drive_id, bold=True)} as '{request.drive_label}'...")
        self.mounter.mount(request.drive_id, request.drive_label, self.signal_names.mount)
        if self.signals.wait(self.signal_names.mount, self.config.timeout) is WaitResult.TIMED_OUT:
            return Failure(
                FailureKind.MOUNT_TIMEOUT,
                f"Mounting '{request.drive_label}' was not confirmed within {self.config.timeout:g} seconds.",
            )
        return None

    def resolve_paths(
        self,
        request: BackupRequest,
        letter: str,
        tool: ToolDescriptor,
        cleanup: ExitStack,
        report: RunReport,
    ) -> tuple[MountOutcome | None, Failure | None]:
        """Work out the tool-facing and host-facing destination paths."""
        if tool.environment is Environment.NATIVE:
            dest = letter + request.dest_path
            return MountOutcome(
                letter=letter,
                tool_dest=dest,
                host_dest=dest,
                tool_source=request.source,
                tool_include_list=request.include_list,
            ), None
        if tool.environment is Environment.SECONDARY:
            return self._resolve_wsl_paths(request, letter, cleanup, report)
        return None, Failure(
            FailureKind.UNSUPPORTED_ENVIRONMENT,
            f"Tool '{tool.key}' uses the unsupported environment {tool.environment!r}.",
        )

    def _resolve_wsl_paths(
        self,
        request: BackupRequest,
        letter: str,
        cleanup: ExitStack,
        report: RunReport,
    ) -> tuple[MountOutcome | None, Failure | None]:
        mount_point = mount_point_for(request.drive_label, self.config.mount_point_prefix)
        state = self.bridge.path_state(mount_point)
        if state is PathState.OTHER:
            return None, Failure(
                FailureKind.NOT_A_DIRECTORY,
                f"The WSL mount point {mount_point} exists but is not a directory.",
            )
        existed = state is PathState.DIRECTORY
        if not existed:
            try:
                self.bridge.create_mount_point(mount_point)
            except BridgeError as e:
                return None, Failure(FailureKind.MOUNT_BRIDGE_FAILED, f"Could not create {mount_point}: {e}")
        cleanup.callback(self.release_bridge, request, mount_point, existed, report)

        try:
            self.bridge.bridge_mount(letter, mount_point)
        except BridgeError as e:
            return None, Failure(
                FailureKind.MOUNT_BRIDGE_FAILED,
                f"Could not mount {letter} into WSL at {mount_point}: {e}",
            )

        tool_dest = posixpath.join(mount_point, request.dest_path.replace("\\", "/").lstrip("/"))
        try:
            tool_source = self.bridge.to_secondary(request.source)
            tool_include_list = (
                self.bridge.to_secondary(request.include_list) if request.include_list else None
            )
        except BridgeError as e:
            return None, Failure(
                FailureKind.PATH_TRANSLATION_FAILED,
                f"Could not translate a Windows path into WSL: {e}",
            )
        try:
            host_dest = self.bridge.to_host(tool_dest)
        except BridgeError as e:
            return None, Failure(
                FailureKind.PATH_TRANSLATION_FAILED,
                f"Could not translate a WSL path into Windows: {e}",
            )

        return MountOutcome(
            letter=letter,
            tool_dest=tool_dest,
            host_dest=host_dest,
            tool_source=tool_source,
            tool_include_list=tool_include_list,
            mount_point=mount_point,
            mount_point_existed=existed,
        ), None

    def check_destination(self, paths: MountOutcome) -> Failure | None:
        """Make sure the destination folder is reachable."""
        if not os.path.isdir(paths.host_dest):
            return Failure(
                FailureKind.DESTINATION_NOT_FOUND,
                f"The destination folder {paths.host_dest} does not exist or is not a folder.",
            )
        return None

    def is_repository(self, paths: MountOutcome) -> bool:
        """Return whether the destination already holds an rdiff-backup repository."""
        return os.path.isdir(os.path.join(paths.host_dest, self.config.repository_marker))

    def prune(
        self,
        request: BackupRequest,
        paths: MountOutcome,
        tool: ToolDescriptor,
        report: RunReport,
    ) -> None:
        """Remove increments older than the requested age; failures are reported only."""
        if not self.is_repository(paths):
            log_info("No previous backup found - nothing to prune.")
            return
        params = ToolParams(
            destination=paths.tool_dest,
            compatible_timestamps=bool(request.compatible_timestamps),
            older_than=request.prune_age,
            force=True,
        )
        returncode = invoke_tool(Operation.PRUNE, params, tool, self.runner)
        if returncode != 0:
            self._side_report(
                request,
                report,
                Failure(
                    FailureKind.PRUNE_FAILED,
                    f"Removing increments older than {request.prune_age} from {paths.tool_dest}"
                    f" failed with exit code {returncode}. Continuing with the backup.",
                ),
            )

    def backup(
        self,
        request: BackupRequest,
        paths: MountOutcome,
        tool: ToolDescriptor,
        report: RunReport,
    ) -> Failure | None:
        """Run the backup, verifying the repository when it fails."""
        params = ToolParams(
            source=paths.tool_source,
            destination=paths.tool_dest,
            compatible_timestamps=bool(request.compatible_timestamps),
            include_list=paths.tool_include_list,
        )
        log_info(f"From: {style(paths.tool_source, bold=True)}")
        log_info(f"To:   {style(paths.tool_dest, bold=True)}")
        returncode = invoke_tool(Operation.BACKUP, params, tool, self.runner)
        if returncode == 0:
            log_info(style("Backup completed without errors.", "magenta"))
            return None

        log_warn(f"Backup exited with {returncode} - verifying the repository.")
        verify_params = ToolParams(
            destination=paths.tool_dest,
            compatible_timestamps=bool(request.compatible_timestamps),
        )
        if invoke_tool(Operation.VERIFY, verify_params, tool, self.runner) != 0:
            report.verify = VerifyResult.CORRUPTED
            condition = "the repository appears to be corrupted"
        else:
            report.verify = VerifyResult.LIKELY_INTACT
            condition = "the repository is likely intact"
        return Failure(
            FailureKind.BACKUP_FAILED,
            f"Backup '{request.label}' to {paths.tool_dest} failed with exit code {returncode};"
            f" {condition} ({report.verify.value}).",
        )

    def release_bridge(
        self,
        request: BackupRequest,
        mount_point: str,
        existed: bool,  # noqa: FBT001
        report: RunReport,
    ) -> None:
        """Unmount the WSL bridge and remove the mount point if this run created it."""
        if not self.bridge.is_mounted(mount_point):
            return
        try:
            self.bridge.unmount(mount_point)
            if not existed:
                self.bridge.remove_mount_point(mount_point)
        except BridgeError as e:
            self._side_report(
                request,
                report,
                Failure(FailureKind.UNMOUNT_BRIDGE_FAILED, f"Could not release {mount_point}: {e}"),
            )

    def dismount(self, request: BackupRequest, letter: str, report: RunReport) -> None:
        """Dismount the destination drive and confirm it is gone."""
        if not self.drive_query.exists_by_letter(letter):
            log_info(f"{letter} is no longer present - nothing to dismount.")
            return
        log_info(f"Dismounting {style(letter, bold=True)}...")
        self.mounter.dismount(letter, self.signal_names.dismount)
        if self.signals.wait(self.signal_names.dismount, self.config.timeout) is WaitResult.TIMED_OUT:
            self._side_report(
                request,
                report,
                Failure(
                    FailureKind.DISMOUNT_TIMEOUT,
                    f"Dismounting {letter} was not confirmed within {self.config.timeout:g} seconds.",
                ),
            )
            return
        if self.drive_query.exists_by_label(request.drive_label):
            self._side_report(
                request,
                report,
                Failure(
                    FailureKind.RESIDUAL_MOUNT,
                    f"Drive '{request.drive_label}' is still mounted after dismounting {letter}.",
                ),
            )

    def _side_report(self, request: BackupRequest, report: RunReport, failure: Failure) -> None:
        report.report(failure)
        log_warn(str(failure))
        self._notify(request, failure.message)

    def _notify(self, request: BackupRequest, message: str, *, with_action: bool = False) -> None:
        body = f"{message}\n{self.config.recommended_action}" if with_action else message
        self.notifier.notify(f"{self.config.notification_title}: {request.label}", body)


def run_backup(
    request: BackupRequest,
    *,
    config: RunConfig | None = None,
    mounter: DriveMounter | None = None,
    drive_query: DriveQuery | None = None,
    notifier: Notifier | None = None,
    raise_on_failure: bool = False,
) -> RunOutcome:
    """Run a backup with the default collaborators for anything not given.

    Runs that end in an unexpected exception always raise ``BackupRunError``.
    """
    orchestrator = Orchestrator(
        config or default_config(),
        mounter or MockDriveMounter(),
        drive_query or default_drive_query(),
        notifier or DesktopNotifier(),
    )
    outcome = orchestrator.run(request)
    if raise_on_failure and outcome.status.is_fatal:
        raise BackupRunError(outcome)
    return outcome


# -----------------------------------------------------------------------------
# Command line
# -----------------------------------------------------------------------------

REQUIRED_ARGUMENTS = ("label", "source", "drive_id", "drive_label", "dest_path")


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments and return the parsed arguments."""
    parser = argparse.ArgumentParser(
        description="Mount a backup drive, back up to it with rdiff-backup, and dismount it again.",
    )
    parser.add_argument("--label", help="Name of this backup, used in messages.")
    parser.add_argument("--source", help="Folder to back up.")
    parser.add_argument("--drive-id", help="Identifier of the drive to mount.")
    parser.add_argument(
        "--drive-label",
        help=f"Label to give the mounted drive (at most {MAX_LABEL_LENGTH} characters,"
        f" {FAT_LABEL_LENGTH} on FAT). Must not be in use already.",
    )
    parser.add_argument("--dest-path", help="Destination folder relative to the drive root, e.g. /Backup.")
    parser.add_argument(
        "--compatible-timestamps",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Use timestamps without colons. Default: only when rdiff-backup runs in WSL, where it is always on.",
    )
    parser.add_argument("--include-list", help="rdiff-backup include/exclude file list.")
    parser.add_argument(
        "--prune-age",
        default=DEFAULT_PRUNE_AGE,
        help=f"Remove increments older than this (rdiff-backup time spec). Default: {DEFAULT_PRUNE_AGE}",
    )
    parser.add_argument("--tool", default=DEFAULT_TOOL, help=f"rdiff-backup version used to back up. Default: {DEFAULT_TOOL}")
    parser.add_argument("--prune-tool", help="rdiff-backup version used to prune. Default: same as --tool")
    parser.add_argument("--tools-config", help="JSON file with the rdiff-backup version registry.")
    parser.add_argument("--list-tools", action="store_true", help="List the known rdiff-backup versions and exit.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output.")
    args = parser.parse_args(argv)

    if not args.list_tools:
        missing = [f"--{name.replace('_', '-')}" for name in REQUIRED_ARGUMENTS if not getattr(args, name)]
        if missing:
            parser.error(f"the following arguments are required: {', '.join(missing)}")
    return args


def format_registry(registry: dict[str, ToolDescriptor]) -> str:
    """Return a human-readable listing of the registry."""
    lines = []
    for key, tool in sorted(registry.items()):
        cmd = " ".join([tool.executable, *tool.leading_args])
        force = ", always --force" if tool.always_force else ""
        lines.append(f"{key}: {tool.dialect.value} API, {tool.environment.value}{force} ({cmd})")
    return "\n".join(lines)


def main(argv: Sequence[str] | None = None) -> None:
    """Main function."""
    args = parse_arguments(argv)
    global VERBOSE
    VERBOSE = args.verbose
    signal.signal(signal.SIGINT, lambda n, f: terminate_script(n, f))

    try:
        records = read_registry_file(args.tools_config) if args.tools_config else DEFAULT_TOOL_REGISTRY
        registry = load_tool_registry(records)
    except (OSError, ValueError) as e:
        log_error(f"Invalid tool registry: {e}")
        sys.exit(1)

    if args.list_tools:
        log_info(f"Known rdiff-backup versions:\n{style(format_registry(registry), 'yellow')}")
        sys.exit(0)

    request = BackupRequest(
        label=args.label,
        source=args.source,
        drive_id=args.drive_id,
        drive_label=args.drive_label,
        dest_path=args.dest_path,
        compatible_timestamps=args.compatible_timestamps,
        include_list=args.include_list,
        prune_age=args.prune_age,
        backup_tool=args.tool,
        prune_tool=args.prune_tool,
    )
    try:
        run_backup(request, config=RunConfig(registry=registry), raise_on_failure=True)
    except BackupRunError as e:
        log_error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
