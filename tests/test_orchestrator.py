"""Tests for the mount / backup / dismount orchestration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from rdiff_drive_backup import (
    DEFAULT_TOOL_REGISTRY,
    BackupRequest,
    BackupRunError,
    CmdResult,
    FailureKind,
    Orchestrator,
    RunConfig,
    RunStatus,
    SignalNamespace,
    VerifyResult,
    WslBridge,
    load_tool_registry,
    mount_point_for,
)

DRIVE_ID = "F139A0C2-5D3B-4E8B-9A61-0E52D4B1C7F3"
DRIVE_LABEL = "_Sys_backup"
MOUNT_POINT = mount_point_for(DRIVE_LABEL)
V210A1 = "C:/Tools/rdiff-backup-2.1.0a1/rdiff-backup.exe"


class Volumes:
    """The live volume set as seen by the fake collaborators."""

    def __init__(self, letter: str, labels: tuple[str, ...] = ()) -> None:
        self.letter = letter
        self.labels = set(labels)
        self.mounted: dict[str, str] = {}


class FakeMounter:
    """Mounts into ``Volumes`` and signals synchronously (or never)."""

    def __init__(
        self,
        signals: SignalNamespace,
        volumes: Volumes,
        *,
        signal_mount: bool = True,
        signal_dismount: bool = True,
        detach: bool = True,
    ) -> None:
        self.signals = signals
        self.volumes = volumes
        self.signal_mount = signal_mount
        self.signal_dismount = signal_dismount
        self.detach = detach
        self.calls: list[tuple[str, ...]] = []

    def mount(self, drive_id: str, label: str, signal_name: str) -> None:
        self.calls.append(("mount", drive_id, label))
        if self.signal_mount:
            self.volumes.mounted[label] = self.volumes.letter
            self.signals.signal(signal_name)

    def dismount(self, letter: str, signal_name: str) -> None:
        self.calls.append(("dismount", letter))
        if self.detach:
            self.volumes.mounted = {k: v for k, v in self.volumes.mounted.items() if v != letter}
        if self.signal_dismount:
            self.signals.signal(signal_name)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class FakeDriveQuery:
    def __init__(self, volumes: Volumes) -> None:
        self.volumes = volumes

    def exists_by_label(self, label: str) -> bool:
        return label in self.volumes.labels or label in self.volumes.mounted

    def exists_by_letter(self, letter: str) -> bool:
        return letter in self.volumes.mounted.values()

    def letter_by_label(self, label: str) -> str:
        return self.volumes.mounted.get(label, "")


class FakeNotifier:
    def __init__(self) -> None:
        self.notifications: list[tuple[str, str]] = []

    def notify(self, title: str, body: str) -> None:
        self.notifications.append((title, body))


class FakeToolRunner:
    """Plays rdiff-backup: exit codes per operation, every command recorded."""

    def __init__(self, *, backup: int = 0, prune: int = 0, verify: int = 0) -> None:
        self.codes = {"backup": backup, "prune": prune, "verify": verify}
        self.commands: list[list[str]] = []

    def __call__(self, cmd: Any, **kwargs: Any) -> CmdResult:
        self.commands.append(list(cmd))
        return CmdResult("", "", self.codes[operation_of(cmd)])


def operation_of(cmd: list[str]) -> str:
    if "--remove-older-than" in cmd or "remove" in cmd:
        return "prune"
    if "--verify" in cmd or "verify" in cmd:
        return "verify"
    return "backup"


class FakeWslRunner(FakeToolRunner):
    """Plays wsl.exe: test, mkdir, mount, mountpoint, umount, rmdir, wslpath and rdiff-backup."""

    def __init__(
        self,
        host_dest: str,
        *,
        directories: tuple[str, ...] = (),
        files: tuple[str, ...] = (),
        fail: tuple[str, ...] = (),
        **codes: int,
    ) -> None:
        super().__init__(**codes)
        self.host_dest = host_dest
        self.directories = set(directories)
        self.files = set(files)
        self.fail = set(fail)
        self.mounted: set[str] = set()

    def __call__(self, cmd: Any, **kwargs: Any) -> CmdResult:
        cmd = list(cmd)
        args = cmd[cmd.index("-e") + 1 :]
        name = args[0]
        if name.endswith("rdiff-backup"):
            return super().__call__(cmd, **kwargs)
        self.commands.append(cmd)
        if name in self.fail or (name == "wslpath" and f"wslpath {args[2]}" in self.fail):
            return CmdResult("", f"{name}: failed", 1)
        path = args[-1]
        if name == "test":
            found = path in self.directories or (args[1] == "-e" and path in self.files)
            return CmdResult("", "", 0 if found else 1)
        if name == "mkdir":
            self.directories.add(path)
        elif name == "mount":
            self.mounted.add(args[4])
        elif name == "mountpoint":
            return CmdResult("", "", 0 if path in self.mounted else 1)
        elif name == "umount":
            self.mounted.discard(path)
        elif name == "rmdir":
            self.directories.discard(path)
        elif name == "wslpath":
            if args[2] == "-u":
                return CmdResult("/mnt/c/" + path[3:].replace("\\", "/"), "", 0)
            return CmdResult(self.host_dest, "", 0)
        return CmdResult("", "", 0)

    def bridge_commands(self) -> list[str]:
        names = []
        for cmd in self.commands:
            args = cmd[cmd.index("-e") + 1 :]
            if not args[0].endswith("rdiff-backup"):
                names.append(args[0])
        return names

    def tool_commands(self) -> list[list[str]]:
        return [c for c in self.commands if c[c.index("-e") + 1].endswith("rdiff-backup")]


def make_request(**kwargs: Any) -> BackupRequest:
    defaults = {
        "label": "System",
        "source": "C:/",
        "drive_id": DRIVE_ID,
        "drive_label": DRIVE_LABEL,
        "dest_path": "/Backup",
        "backup_tool": "v210a1",
    }
    defaults.update(kwargs)
    return BackupRequest(**defaults)


class Harness:
    """An orchestrator wired to fakes."""

    def __init__(
        self,
        tmp_path: Path,
        *,
        runner: Any = None,
        labels: tuple[str, ...] = (),
        create_dest: bool = True,
        **mounter_kwargs: bool,
    ) -> None:
        self.letter = str(tmp_path / "E")
        if create_dest:
            Path(self.letter, "Backup").mkdir(parents=True)
        self.signals = SignalNamespace()
        self.volumes = Volumes(self.letter, labels)
        self.mounter = FakeMounter(self.signals, self.volumes, **mounter_kwargs)
        self.notifier = FakeNotifier()
        self.runner = runner if runner is not None else FakeToolRunner()
        config = RunConfig(registry=load_tool_registry(DEFAULT_TOOL_REGISTRY), timeout=0.05)
        self.orchestrator = Orchestrator(
            config,
            self.mounter,
            FakeDriveQuery(self.volumes),
            self.notifier,
            signals=self.signals,
            bridge=WslBridge(self.runner),
            runner=self.runner,
            run_token="test",
        )

    def run(self, **kwargs: Any) -> Any:
        return self.orchestrator.run(make_request(**kwargs))


def test_successful_native_run(tmp_path: Path) -> None:
    """The reference scenario: mount, no repository yet, back up, dismount."""
    h = Harness(tmp_path)
    outcome = h.run()

    assert outcome.status is RunStatus.SUCCESS
    assert outcome.exit_code == 0
    assert outcome.failure is None
    assert h.mounter.calls == [
        ("mount", DRIVE_ID, DRIVE_LABEL),
        ("dismount", h.letter),
    ]
    # No rdiff-backup-data yet, so no prune
    assert h.runner.commands == [
        [V210A1, "--force", "backup", "--no-acls", "--no-eas", "C:/", f"{h.letter}/Backup"],
    ]
    assert h.notifier.notifications == []


def test_existing_label_fails_before_mount(tmp_path: Path) -> None:
    """A label that is already in use must never be mounted over."""
    h = Harness(tmp_path, labels=(DRIVE_LABEL,))
    outcome = h.run()

    assert outcome.status is RunStatus.VALIDATION_FAILED
    assert outcome.failure.kind is FailureKind.ALREADY_EXISTS
    assert outcome.exit_code == 1
    assert h.mounter.calls == []
    assert h.runner.commands == []
    assert len(h.notifier.notifications) == 1


@pytest.mark.parametrize(
    ("kwargs", "kind"),
    [
        ({"backup_tool": "v999"}, FailureKind.UNKNOWN_TOOL_VERSION),
        ({"prune_tool": "v999"}, FailureKind.UNKNOWN_TOOL_VERSION),
        ({"prune_tool": "wsl-v204"}, FailureKind.ENVIRONMENT_MISMATCH),
        ({"backup_tool": "wsl-v224", "prune_tool": "v205"}, FailureKind.ENVIRONMENT_MISMATCH),
        ({"label": " "}, FailureKind.INVALID_REQUEST),
        ({"drive_label": "x" * 33}, FailureKind.INVALID_REQUEST),
    ],
)
def test_validation_failures_never_mount(tmp_path: Path, kwargs: dict, kind: FailureKind) -> None:
    """Bad selectors or mixed environments are rejected before mounting."""
    h = Harness(tmp_path)
    outcome = h.run(**kwargs)

    assert outcome.status is RunStatus.VALIDATION_FAILED
    assert outcome.failure.kind is kind
    assert h.mounter.count("mount") == 0


def test_mount_timeout_skips_dismount(tmp_path: Path) -> None:
    """Without a confirmed mount there is no letter, so nothing is dismounted."""
    h = Harness(tmp_path, signal_mount=False)
    outcome = h.run()

    assert outcome.status is RunStatus.MOUNT_TIMED_OUT
    assert outcome.failure.kind is FailureKind.MOUNT_TIMEOUT
    assert outcome.exit_code == 1
    assert h.mounter.count("dismount") == 0
    assert h.runner.commands == []
    assert len(h.notifier.notifications) == 1


def test_missing_destination_still_dismounts(tmp_path: Path) -> None:
    """A missing destination fails the run, but the drive is still dismounted."""
    h = Harness(tmp_path, create_dest=False)
    Path(h.letter).mkdir()
    outcome = h.run()

    assert outcome.status is RunStatus.PATH_RESOLUTION_FAILED
    assert outcome.failure.kind is FailureKind.DESTINATION_NOT_FOUND
    assert outcome.exit_code == 1
    assert h.mounter.calls[-1] == ("dismount", h.letter)
    assert h.runner.commands == []
    assert len(h.notifier.notifications) == 1
    title, body = h.notifier.notifications[0]
    assert "System" in title
    assert h.orchestrator.config.recommended_action in body


class DeniedRunner(FakeToolRunner):
    """Plays a host that refuses to start rdiff-backup."""

    def __call__(self, cmd: Any, **kwargs: Any) -> CmdResult:
        self.commands.append(list(cmd))
        raise PermissionError(13, "Access is denied")


def test_unexpected_error_is_notified_and_cleaned_up(tmp_path: Path) -> None:
    """An exception inside a step notifies, dismounts, then surfaces as the run's error."""
    h = Harness(tmp_path, runner=DeniedRunner())
    with pytest.raises(BackupRunError) as exc_info:
        h.run()

    outcome = exc_info.value.outcome
    assert isinstance(exc_info.value.__cause__, PermissionError)
    assert outcome.failure.kind is FailureKind.UNEXPECTED_ERROR
    assert "Access is denied" in outcome.failure.message
    assert outcome.exit_code == 1
    assert h.mounter.count("dismount") == 1
    assert len(h.notifier.notifications) == 1
    _, body = h.notifier.notifications[0]
    assert "PermissionError" in body
    assert h.orchestrator.config.recommended_action in body


def test_prune_failure_does_not_fail_run(tmp_path: Path) -> None:
    """Prune is best effort: the backup still runs and the exit code stays 0."""
    h = Harness(tmp_path, runner=FakeToolRunner(prune=1))
    Path(h.letter, "Backup", "rdiff-backup-data").mkdir()
    outcome = h.run(prune_age="2W")

    assert outcome.status is RunStatus.PRUNE_FAILED_CONTINUED
    assert outcome.exit_code == 0
    assert [f.kind for f in outcome.side_reports] == [FailureKind.PRUNE_FAILED]
    assert len(h.notifier.notifications) == 1
    assert [operation_of(c) for c in h.runner.commands] == ["prune", "backup"]
    assert h.runner.commands[0] == [
        V210A1, "--force", "remove", "increments", "--older-than", "2W", f"{h.letter}/Backup",
    ]


def test_prune_runs_with_prune_tool(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    Path(h.letter, "Backup", "rdiff-backup-data").mkdir()
    outcome = h.run(prune_tool="v205")

    assert outcome.status is RunStatus.SUCCESS
    prune_cmd, backup_cmd = h.runner.commands
    assert prune_cmd[0] == "C:/Tools/rdiff-backup-2.0.5/rdiff-backup.exe"
    assert prune_cmd[1:] == ["--force", "--remove-older-than", "3M", f"{h.letter}/Backup"]
    assert backup_cmd[0] == V210A1


@pytest.mark.parametrize(
    ("verify_code", "expected"),
    [(1, VerifyResult.CORRUPTED), (0, VerifyResult.LIKELY_INTACT)],
)
def test_backup_failure_is_verified(tmp_path: Path, verify_code: int, expected: VerifyResult) -> None:
    """A failed backup is followed by verify, which only classifies the failure."""
    h = Harness(tmp_path, runner=FakeToolRunner(backup=2, verify=verify_code))
    outcome = h.run()

    assert outcome.status is RunStatus.BACKUP_FAILED
    assert outcome.failure.kind is FailureKind.BACKUP_FAILED
    assert outcome.verify is expected
    assert expected.value in outcome.failure.message
    assert outcome.exit_code == 1
    assert [operation_of(c) for c in h.runner.commands] == ["backup", "verify"]
    assert h.runner.commands[1] == [V210A1, "--force", "verify", f"{h.letter}/Backup"]
    assert h.mounter.count("dismount") == 1
    assert len(h.notifier.notifications) == 1


def test_dismount_timeout_is_reported_only(tmp_path: Path) -> None:
    h = Harness(tmp_path, signal_dismount=False)
    outcome = h.run()

    assert outcome.status is RunStatus.DISMOUNT_TIMED_OUT
    assert outcome.exit_code == 0
    assert [f.kind for f in outcome.side_reports] == [FailureKind.DISMOUNT_TIMEOUT]
    assert len(h.notifier.notifications) == 1


def test_residual_mount_is_reported(tmp_path: Path) -> None:
    """The dismount was confirmed but the label is still there."""
    h = Harness(tmp_path, detach=False)
    outcome = h.run()

    assert outcome.status is RunStatus.SUCCESS
    assert [f.kind for f in outcome.side_reports] == [FailureKind.RESIDUAL_MOUNT]
    assert len(h.notifier.notifications) == 1


def test_cleanup_failures_add_to_primary_failure(tmp_path: Path) -> None:
    """A failed run with a failed dismount sends two notifications and keeps the first error."""
    h = Harness(tmp_path, runner=FakeToolRunner(backup=1, verify=1), signal_dismount=False)
    outcome = h.run()

    assert outcome.status is RunStatus.BACKUP_FAILED
    assert outcome.failure.kind is FailureKind.BACKUP_FAILED
    assert [f.kind for f in outcome.side_reports] == [FailureKind.DISMOUNT_TIMEOUT]
    assert len(h.notifier.notifications) == 2


def test_drive_without_letter(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.volumes.letter = ""
    outcome = h.run()

    assert outcome.status is RunStatus.PATH_RESOLUTION_FAILED
    assert outcome.failure.kind is FailureKind.DRIVE_NOT_FOUND
    assert h.mounter.count("dismount") == 0


def test_unsupported_environment(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    registry = h.orchestrator.config.registry
    registry["odd"] = registry["v205"]._replace(key="odd", environment="cygwin")
    outcome = h.orchestrator.run(make_request(backup_tool="odd", prune_tool="odd"))

    assert outcome.status is RunStatus.PATH_RESOLUTION_FAILED
    assert outcome.failure.kind is FailureKind.UNSUPPORTED_ENVIRONMENT
    assert h.mounter.count("dismount") == 1


# -----------------------------------------------------------------------------
# WSL
# -----------------------------------------------------------------------------


def wsl_harness(tmp_path: Path, **runner_kwargs: Any) -> Harness:
    host_dest = tmp_path / "wsl" / "Backup"
    host_dest.mkdir(parents=True)
    runner = FakeWslRunner(str(host_dest), **runner_kwargs)
    return Harness(tmp_path, runner=runner)


def test_wsl_run_creates_and_removes_mount_point(tmp_path: Path) -> None:
    h = wsl_harness(tmp_path)
    outcome = h.run(backup_tool="wsl-v204", include_list="C:/lists/system.txt")

    assert outcome.status is RunStatus.SUCCESS
    assert h.runner.bridge_commands() == [
        "test",  # does the mount point exist?
        "mkdir",
        "mount",
        "wslpath",
        "wslpath",
        "wslpath",
        "mountpoint",
        "umount",
        "rmdir",
    ]
    mount_cmd = next(c for c in h.runner.commands if "mount" in c and "drvfs" in c)
    assert mount_cmd[:3] == ["wsl", "-u", "root"]
    assert mount_cmd[-4:] == [h.letter, MOUNT_POINT, "-o", "metadata,uid=0,gid=0,umask=022"]

    (backup_cmd,) = h.runner.tool_commands()
    assert backup_cmd == [
        "wsl",
        "-e",
        "/usr/bin/rdiff-backup",
        "--use-compatible-timestamps",
        "--include-globbing-filelist",
        "/mnt/c/lists/system.txt",
        "/mnt/c/",
        f"{MOUNT_POINT}/Backup",
    ]
    assert MOUNT_POINT not in h.runner.directories
    assert h.mounter.count("dismount") == 1


def test_wsl_existing_mount_point_is_reused_and_kept(tmp_path: Path) -> None:
    """Running twice on a pre-existing mount point never recreates or removes it."""
    h = wsl_harness(tmp_path, directories=(MOUNT_POINT,))
    for _ in range(2):
        outcome = h.run(backup_tool="wsl-v224")
        assert outcome.status is RunStatus.SUCCESS

    names = h.runner.bridge_commands()
    assert "mkdir" not in names
    assert "rmdir" not in names
    assert names.count("umount") == 2
    assert MOUNT_POINT in h.runner.directories
    assert h.runner.tool_commands()[0][3:] == [
        "--use-compatible-timestamps",
        "backup",
        "/mnt/c/",
        f"{MOUNT_POINT}/Backup",
    ]


def test_wsl_mount_point_not_a_directory(tmp_path: Path) -> None:
    h = wsl_harness(tmp_path, files=(MOUNT_POINT,))
    outcome = h.run(backup_tool="wsl-v204")

    assert outcome.failure.kind is FailureKind.NOT_A_DIRECTORY
    assert outcome.status is RunStatus.PATH_RESOLUTION_FAILED
    assert "mount" not in h.runner.bridge_commands()
    assert h.mounter.count("dismount") == 1


def test_wsl_bridge_mount_failure(tmp_path: Path) -> None:
    h = wsl_harness(tmp_path, fail=("mount",))
    outcome = h.run(backup_tool="wsl-v204")

    assert outcome.failure.kind is FailureKind.MOUNT_BRIDGE_FAILED
    assert h.runner.tool_commands() == []
    assert "umount" not in h.runner.bridge_commands()
    assert h.mounter.count("dismount") == 1


@pytest.mark.parametrize(("direction", "text"), [("-u", "into WSL"), ("-w", "into Windows")])
def test_wsl_path_translation_failure(tmp_path: Path, direction: str, text: str) -> None:
    h = wsl_harness(tmp_path, fail=(f"wslpath {direction}",))
    outcome = h.run(backup_tool="wsl-v204")

    assert outcome.failure.kind is FailureKind.PATH_TRANSLATION_FAILED
    assert text in outcome.failure.message
    # The bridge is still released
    assert "umount" in h.runner.bridge_commands()


def test_wsl_unmount_failure_is_reported_only(tmp_path: Path) -> None:
    h = wsl_harness(tmp_path, fail=("umount",))
    outcome = h.run(backup_tool="wsl-v204")

    assert outcome.status is RunStatus.SUCCESS
    assert [f.kind for f in outcome.side_reports] == [FailureKind.UNMOUNT_BRIDGE_FAILED]
    assert "rmdir" not in h.runner.bridge_commands()
    assert len(h.notifier.notifications) == 1
    assert h.mounter.count("dismount") == 1
