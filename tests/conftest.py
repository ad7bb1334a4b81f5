"""Shared fixtures for QVM tests."""
import itertools
import json
import time
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app import config, disks, locks, main, metadata_store, supervisor, vms

GIB = 1024 ** 3


class FakeSupervisor(supervisor.ProcessSupervisor):
    """Process table simulated in memory.

    ``crash(pid)`` makes a process disappear as if it exited on its own;
    ``probe_error`` / ``terminate_error`` make the next calls fail the way an
    unexpected OS error would.
    """

    def __init__(self):
        self._pids = itertools.count(4000)
        self.alive = set()
        self.spawned: List[List[str]] = []
        self.terminated: List[int] = []
        self.probe_error: Optional[Exception] = None
        self.terminate_error: Optional[Exception] = None

    def spawn(self, args):
        pid = next(self._pids)
        self.spawned.append(list(args))
        self.alive.add(pid)
        return pid

    def is_alive(self, pid):
        if self.probe_error:
            raise self.probe_error
        return pid in self.alive

    def terminate(self, pid):
        if self.terminate_error:
            raise self.terminate_error
        if pid not in self.alive:
            return False
        self.alive.discard(pid)
        self.terminated.append(pid)
        return True

    def crash(self, pid):
        self.alive.discard(pid)


class FakeQemuImg:
    """Stand-in for ``subprocess.run`` that behaves like ``qemu-img``.

    Each image file holds a small JSON header with its format, virtual size
    and creation options, so renames and deletes on disk carry the image
    state along. Files without a header are reported as unreadable.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.fail_next: Optional[str] = None

    def __call__(self, cmd, check=False, capture_output=False, text=False, timeout=None):
        self.calls.append(list(cmd))
        action = cmd[1]
        if self.fail_next:
            stderr, self.fail_next = self.fail_next, None
            raise subprocess.CalledProcessError(1, cmd, output="", stderr=stderr)
        if action == "create":
            fmt = cmd[cmd.index("-f") + 1]
            path, size = cmd[-2], cmd[-1]
            options = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-o"]
            self._write(path, {"format": fmt, "size": int(size[:-1]) * GIB, "options": options})
            return subprocess.CompletedProcess(cmd, 0, stdout=f"Formatting '{path}'\n", stderr="")
        if action == "info":
            return subprocess.CompletedProcess(cmd, 0, stdout=self.report(cmd[-1]), stderr="")
        if action == "resize":
            path, size = cmd[-2], cmd[-1]
            image = self._read(path)
            image["size"] = int(size[:-1]) * GIB
            self._write(path, image)
            return subprocess.CompletedProcess(cmd, 0, stdout="Image resized.\n", stderr="")
        raise AssertionError(f"unexpected qemu-img call: {cmd}")

    @staticmethod
    def _write(path: str, image: dict) -> None:
        Path(path).write_text(json.dumps(image))

    @staticmethod
    def _read(path: str) -> dict:
        try:
            return json.loads(Path(path).read_text())
        except (OSError, ValueError):
            raise subprocess.CalledProcessError(
                1, ["qemu-img", "info", path], output="",
                stderr=f"qemu-img: Could not open '{path}': Image is not in a known format")

    def report(self, path: str) -> str:
        image = self._read(path)
        size = image["size"]
        lines = [
            f"image: {path}",
            f"file format: {image['format']}",
            f"virtual size: {size // GIB} GiB ({size} bytes)",
            "disk size: 4 KiB",
        ]
        extra = []
        for option in image["options"]:
            key, value = option.split("=", 1)
            if key == "preallocation":
                extra.append(f"    preallocation: {value}")
            elif key == "subformat":
                extra.append(f"    create type: {value}")
        if extra:
            lines.append("Format specific information:")
            lines.extend(extra)
        return "\n".join(lines) + "\n"

    def add_image(self, path: Path, fmt: str, size_gb: int, options=()) -> Path:
        """Place an already-existing image on disk, bypassing ``create``."""
        self._write(str(path), {"format": fmt, "size": size_gb * GIB, "options": list(options)})
        return path


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def fake_qemu_img():
    fake = FakeQemuImg()
    with patch("app.disks.subprocess.run", side_effect=fake):
        yield fake


@pytest.fixture
def settings(tmp_path) -> config.Settings:
    s = config.Settings(
        disk_dir=tmp_path / "disks",
        iso_dir=tmp_path / "iso",
        vm_dir=tmp_path / "vms",
        observer_interval=0,
    )
    s.ensure_dirs()
    return s


@pytest.fixture
def disk_manager(settings) -> disks.DiskManager:
    return disks.DiskManager(settings.disk_dir, full_preallocation=True)


@pytest.fixture
def store(settings) -> metadata_store.MetadataStore:
    return metadata_store.MetadataStore(settings.vm_dir)


@pytest.fixture
def vm_manager(store, fake_supervisor, disk_manager, settings) -> vms.VMManager:
    return vms.VMManager(store, fake_supervisor, disk_manager, settings.iso_dir,
                         locks=locks.KeyedLock(), clock=lambda: "2024-01-01T00:00:00.000Z")


@pytest.fixture
def make_disk(settings):
    """Drop an (empty) image file into the disk directory."""
    def _make(filename: str) -> Path:
        path = settings.disk_dir / filename
        path.write_bytes(b"")
        return path
    return _make


@pytest.fixture
def test_client(settings, fake_supervisor, fake_qemu_img):
    """FastAPI test client wired to temporary directories and fakes."""
    main.configure(settings, fake_supervisor)
    main._disk_manager.full_preallocation = True
    client = TestClient(main.app)
    yield client
    main.configure()


@pytest.fixture(scope="session")
def qemu_img_available() -> str:
    """Path of a real qemu-img; skips the test if it is not installed."""
    qemu_img = shutil.which("qemu-img")
    if not qemu_img:
        pytest.skip("qemu-img not available for integration tests")
    return qemu_img


@pytest.fixture
def fake_emulator(tmp_path) -> str:
    """Executable standing in for qemu-system-x86_64: ignores its args and sleeps."""
    sh = shutil.which("sh")
    if not sh or not shutil.which("sleep"):
        pytest.skip("POSIX shell not available")
    script = tmp_path / "fake-qemu"
    script.write_text("#!/bin/sh\nexec sleep 60\n")
    script.chmod(0o755)
    return str(script)


def wait_until_dead(sup: supervisor.ProcessSupervisor, pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not sup.is_alive(pid):
            return True
        time.sleep(0.05)
    return False

