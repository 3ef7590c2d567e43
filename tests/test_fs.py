import os
import signal

import pytest

import livecreate.fs
from livecreate.errors import MountError
from livecreate.fs import (ChrootMount, MountTracker, evict_processes,
                           find_holders, is_under, mksquashfs, mounted_paths)

from .conftest import FakeMountTable, ResolvingMountTable


def mount_all(tracker, root):
    for src, dest, fstype, bind in (("/dev", "/dev", None, True),
                                    ("/dev/pts", "/dev/pts", None, True),
                                    ("proc", "/proc", "proc", False),
                                    ("sysfs", "/sys", "sysfs", False)):
        tracker.register(ChrootMount(src, root, dest, fstype=fstype, bind=bind))


def test_is_under():
    assert is_under("/work/chroot/proc", "/work")
    assert is_under("/work", "/work/")
    assert not is_under("/workshop", "/work")
    assert is_under("/anything", "/")


def test_mount_args(tmp_path):
    bind = ChrootMount("/dev", str(tmp_path), "/dev")
    assert bind.dest == str(tmp_path / "dev")
    assert bind.mount_args() == ["mount", "--bind", "/dev", bind.dest]

    proc = ChrootMount("proc", str(tmp_path), "/proc", fstype="proc", bind=False)
    assert proc.mount_args() == ["mount", "-t", "proc", "proc", proc.dest]


def test_register_records_only_successful_mounts(tmp_path):
    root = str(tmp_path / "chroot")
    table = FakeMountTable(fail_mount=[root + "/proc"])
    tracker = MountTracker(str(tmp_path), table, table.list_mounts)

    tracker.register(ChrootMount("/dev", root, "/dev"))
    with pytest.raises(MountError):
        tracker.register(ChrootMount("proc", root, "/proc", fstype="proc",
                                     bind=False))

    assert [m.dest for m in tracker.mounts] == [root + "/dev"]
    assert os.path.isdir(root + "/proc")


def test_unwind_reverses_mount_order(tmp_path):
    root = str(tmp_path / "chroot")
    table = FakeMountTable()
    tracker = MountTracker(str(tmp_path), table, table.list_mounts)
    mount_all(tracker, root)

    assert tracker.unwind_all() == []
    assert table.unmounted() == list(reversed(table.mounted()))
    assert table.mounted() == [root + "/dev", root + "/dev/pts",
                               root + "/proc", root + "/sys"]
    assert tracker.residual() == []
    assert tracker.mounts == []


def test_unwind_falls_back_to_lazy_unmount(tmp_path):
    root = str(tmp_path / "chroot")
    table = FakeMountTable(busy=[root + "/proc"])
    tracker = MountTracker(str(tmp_path), table, table.list_mounts)
    mount_all(tracker, root)

    assert tracker.unwind_all() == []
    assert ["umount", "-l", "-f", root + "/proc"] in table.log
    assert table.table == []


def test_unwind_continues_past_failures(tmp_path):
    root = str(tmp_path / "chroot")
    table = FakeMountTable(stuck=[root + "/dev/pts"])
    tracker = MountTracker(str(tmp_path), table, table.list_mounts)
    mount_all(tracker, root)

    failures = tracker.unwind_all()

    assert root + "/dev/pts" in failures
    assert table.table == [root + "/dev/pts"]
    assert tracker.residual() == [root + "/dev/pts"]
    # the mount below the stuck one was still attempted
    assert root + "/dev" in tracker.unwind_log


def test_unwind_is_idempotent(tmp_path):
    root = str(tmp_path / "chroot")
    table = FakeMountTable()
    tracker = MountTracker(str(tmp_path), table, table.list_mounts)
    mount_all(tracker, root)

    tracker.unwind_all()
    log = list(table.log)
    assert tracker.unwind_all() == []
    assert tracker.unwind_all() == []
    assert table.log == log


def test_unwind_sweeps_unrecorded_mounts_deepest_first(tmp_path):
    work = str(tmp_path)
    table = FakeMountTable()
    table.table = ["/proc",
                   work + "/chroot/dev",
                   work + "/chroot/dev/pts",
                   work + "/chroot/sys",
                   work + "/chroot/sys/fs/cgroup"]
    tracker = MountTracker(work, table, table.list_mounts)

    assert tracker.unwind_all() == []
    unmounted = table.unmounted()
    assert unmounted.index(work + "/chroot/dev/pts") < \
           unmounted.index(work + "/chroot/dev")
    assert unmounted.index(work + "/chroot/sys/fs/cgroup") < \
           unmounted.index(work + "/chroot/sys")
    assert table.table == ["/proc"]


def test_unwind_through_symlinked_root(tmp_path):
    (tmp_path / "real" / "work").mkdir(parents=True)
    (tmp_path / "link").symlink_to(tmp_path / "real")
    work = str(tmp_path / "link" / "work")
    table = ResolvingMountTable()
    tracker = MountTracker(work, table, table.list_mounts)
    mount_all(tracker, work + "/chroot")

    assert table.table[0] == str(tmp_path / "real" / "work" / "chroot" / "dev")
    assert tracker.residual() == table.table

    assert tracker.unwind_all() == []
    assert table.table == []
    assert tracker.residual() == []


def test_residue_under_symlinked_root(tmp_path):
    (tmp_path / "real" / "work").mkdir(parents=True)
    (tmp_path / "link").symlink_to(tmp_path / "real")
    table = FakeMountTable()
    table.table = [str(tmp_path / "real" / "work" / "chroot" / "proc")]
    tracker = MountTracker(str(tmp_path / "link" / "work"), table,
                           table.list_mounts)

    assert tracker.residual() == table.table
    assert tracker.unwind_all() == []
    assert table.table == []


def test_mounted_root_is_left_alone(tmp_path):
    work = str(tmp_path / "work")
    table = FakeMountTable()
    table.table = [work, work + "/chroot/proc"]
    tracker = MountTracker(work, table, table.list_mounts)

    assert tracker.residual() == [work + "/chroot/proc"]
    assert tracker.unwind_all() == []
    assert table.table == [work]
    assert table.unmounted() == [work + "/chroot/proc"]


def test_mounted_paths(tmp_path):
    mountinfo = tmp_path / "mountinfo"
    mountinfo.write_text(
        "22 1 0:21 / /proc rw,nosuid shared:12 - proc proc rw\n"
        "98 22 0:5 / /var/tmp/with\\040space/dev rw - devtmpfs udev rw\n")

    assert mounted_paths(str(mountinfo)) == ["/proc",
                                             "/var/tmp/with space/dev"]


def test_mounted_paths_unreadable(tmp_path):
    with pytest.raises(MountError):
        mounted_paths(str(tmp_path / "missing"))


def make_proc(tmp_path, links):
    proc = tmp_path / "proc"
    for pid, name, target in links:
        piddir = proc / str(pid)
        if name.startswith("fd/"):
            (piddir / "fd").mkdir(parents=True, exist_ok=True)
        else:
            piddir.mkdir(parents=True, exist_ok=True)
        os.symlink(target, str(piddir / name))
    (proc / "self").mkdir(exist_ok=True)
    return str(proc)


def test_find_holders(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    w = str(work)
    proc = make_proc(tmp_path, [
        (100, "cwd", w + "/chroot"),
        (101, "root", "/"),
        (102, "fd/3", w + "/chroot/var/log/apt.log (deleted)"),
        (103, "exe", w + "shop/bin/sh"),
        (104, "cwd", w),
        (104, "fd/0", w + "/chroot"),
        (os.getpid(), "cwd", w),
    ])

    assert find_holders(w, proc) == [100, 102, 104]


def test_evict_processes_signals_holders(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    proc = make_proc(tmp_path, [(100, "cwd", str(work)),
                                (200, "cwd", str(work)),
                                (300, "cwd", "/")])
    killed = []

    def kill(pid, sig):
        if pid == 200:
            raise ProcessLookupError()
        killed.append((pid, sig))

    assert evict_processes(str(work), proc=proc, kill=kill) == 1
    assert killed == [(100, signal.SIGTERM)]


def test_evict_processes_missing_path(tmp_path):
    assert evict_processes(str(tmp_path / "missing")) == 0


def test_evict_processes_without_proc_or_lsof(tmp_path, monkeypatch):
    monkeypatch.setattr(livecreate.fs, "rcall",
                        lambda *args, **kwargs: ("", "not found", 127))
    assert evict_processes(str(tmp_path), proc=str(tmp_path / "noproc"),
                           kill=lambda pid, sig: pytest.fail("signalled")) == 0


def test_evict_processes_lsof_fallback(tmp_path, monkeypatch):
    monkeypatch.setattr(livecreate.fs, "rcall",
                        lambda *args, **kwargs: ("4242\n%d\n" % os.getpid(),
                                                 "", 0))
    killed = []
    assert evict_processes(str(tmp_path), proc=str(tmp_path / "noproc"),
                           kill=lambda pid, sig: killed.append(pid)) == 1
    assert killed == [4242]


def test_mksquashfs_args(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(livecreate.fs, "call",
                        lambda args: calls.append(args) or 0)

    mksquashfs("/root", "/out.img", "xz", ["proc/*", "sys/*"], "1M")

    args = calls[0]
    assert args[:5] == ["mksquashfs", "/root", "/out.img", "-noappend",
                        "-no-recovery"]
    assert args[args.index("-comp") + 1] == "xz"
    assert args[args.index("-b") + 1] == "1M"
    assert args[args.index("-e") + 1:][:2] == ["proc/*", "sys/*"]


def test_mksquashfs_gzip_is_the_default(monkeypatch):
    calls = []
    monkeypatch.setattr(livecreate.fs, "call",
                        lambda args: calls.append(args) or 0)

    mksquashfs("/root", "/out.img", "gzip")

    assert "-comp" not in calls[0]
