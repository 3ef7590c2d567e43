import os

import pytest

import pykickstart.parser as ksparser
import pykickstart.version as ksversion

from livecreate import LiveImageCreator
from livecreate.errors import CreatorError


KICKSTART = """
lang en_US.UTF-8
timezone Etc/UTC
url --url=http://mirror.example.com/ubuntu/
repo --name=$releasever --baseurl=http://mirror.example.com/ubuntu/
repo --name=$releasever-updates --baseurl=http://mirror.example.com/ubuntu/
bootloader --timeout=5 --append="nomodeset"
part /persistence --size=1 --fstype=ext4 --label=casper-rw

%packages --exclude-weakdeps
ubuntu-standard
wine
-snapd
%end
"""


def parse_kickstart(text=KICKSTART):
    ks = ksparser.KickstartParser(ksversion.makeVersion())
    ks.readKickstartFromString(text)
    return ks


class FakeMountTable(object):
    """Stands in for mount(8), umount(8) and /proc/self/mountinfo.

    busy -- paths a plain umount refuses; the lazy fallback succeeds
    stuck -- paths which cannot be unmounted at all
    fail_mount -- paths whose mount fails

    """
    def __init__(self, busy=(), stuck=(), fail_mount=()):
        self.table = []
        self.log = []
        self.busy = set(busy)
        self.stuck = set(stuck)
        self.fail_mount = set(fail_mount)

    def __call__(self, args):
        self.log.append(list(args))
        if args[0] == "mount":
            target = args[-1]
            if target in self.fail_mount:
                return 32
            self.table.append(target)
            return 0
        if args[0] == "umount":
            target = args[-1]
            if target in self.stuck:
                return 32
            if target in self.busy and "-l" not in args:
                return 32
            self.table.remove(target)
            return 0
        raise AssertionError("unexpected command %s" % args)

    def list_mounts(self):
        return list(self.table)

    def mounted(self):
        return [a[-1] for a in self.log if a[0] == "mount"]

    def unmounted(self):
        return [a[-1] for a in self.log if a[0] == "umount"]


class ResolvingMountTable(FakeMountTable):
    """Records mount points with symlinks resolved, as mountinfo does."""

    def __call__(self, args):
        args = list(args[:-1]) + [os.path.realpath(args[-1])]
        return FakeMountTable.__call__(self, args)


class FakeProvisioner(object):
    def __init__(self, kernels=("5.15.0-91-generic",), fail_install=0):
        self.kernels = kernels
        self.fail_install = fail_install
        self.installed = []
        self.calls = []

    def bootstrap(self, instroot):
        self.calls.append("bootstrap")
        os.makedirs(instroot + "/etc", exist_ok=True)
        os.makedirs(instroot + "/boot", exist_ok=True)

    def write_sources(self, instroot, repos):
        self.calls.append("write_sources")
        self.repos = repos

    def setup(self, instroot):
        self.calls.append("setup")

    def close(self, instroot):
        self.calls.append("close")

    def install_packages(self, instroot, packages, options=()):
        self.calls.append("install_packages")
        if self.fail_install:
            self.fail_install -= 1
            raise CreatorError("apt-get install failed")
        self.installed.append((list(packages), set(options)))
        if "linux-generic" in packages:
            for k in self.kernels:
                for f in ("vmlinuz-", "initrd.img-"):
                    with open("%s/boot/%s%s" % (instroot, f, k), "w") as fp:
                        fp.write(f + k)

    def clean(self, instroot):
        self.calls.append("clean")

    def get_manifest(self, instroot):
        self.calls.append("get_manifest")
        return "casper 1.470\nlinux-generic 5.15.0.91.88\n"


class FakeCompressor(object):
    def __init__(self, size=64):
        self.size = size
        self.calls = []

    def compress(self, source, excludes, output, blocksize="1M",
                 compression="gzip"):
        self.calls.append((source, list(excludes), output))
        with open(output, "wb") as f:
            f.write(b"\0" * self.size)


class FakeBootloader(object):
    def __init__(self):
        self.calls = []

    def generate_standalone_loader(self, fmt, config, output):
        self.calls.append(("loader", fmt, output))
        self.config = config
        with open(output, "w") as f:
            f.write("efi")

    def assemble_fat_image(self, files, output, size_mb=5):
        self.calls.append(("fat", files, output))
        with open(output, "w") as f:
            f.write("fat")


class FakeAssembler(object):
    def __init__(self):
        self.calls = []

    def assemble(self, isodir, boot, volid, output):
        self.calls.append((isodir, boot, volid, output))
        with open(output, "w") as f:
            f.write("iso")


class TestCreator(LiveImageCreator):
    """A LiveImageCreator which needs neither root nor host tools."""
    __test__ = False

    def __init__(self, *args, **kwargs):
        LiveImageCreator.__init__(self, *args, **kwargs)
        self.formatted = []

    def _get_required_tools(self):
        return []

    def _format_persistence(self, image):
        self.formatted.append(image)


@pytest.fixture
def ks():
    return parse_kickstart()


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(os, "geteuid", lambda: 0)


@pytest.fixture
def make_creator(tmp_path, ks, as_root):
    syslinux = tmp_path / "syslinux"
    syslinux.mkdir()
    (syslinux / "isolinux.bin").write_text("isolinux")
    (syslinux / "ldlinux.c32").write_text("ldlinux")
    (syslinux / "vesamenu.c32").write_text("vesamenu")

    evicted = []

    def make(table=None, provisioner=None, compressor=None, kickstart=None,
             workdir=None, **kwargs):
        table = table or FakeMountTable()
        creator = TestCreator(kickstart or ks, "ubuntu-live",
                              workdir or str(tmp_path / "work"),
                              str(tmp_path / "ubuntu-live.iso"),
                              releasever="jammy",
                              provisioner=provisioner or FakeProvisioner(),
                              compressor=compressor or FakeCompressor(),
                              bootloader=FakeBootloader(),
                              assembler=FakeAssembler(),
                              tracker_runner=table,
                              list_mounts=table.list_mounts,
                              evict=lambda path: evicted.append(path) or 0,
                              **kwargs)
        creator.min_rootfs_size = 16
        creator.isolinux_bin = str(syslinux / "isolinux.bin")
        creator.syslinux_modules = str(syslinux)
        creator.table = table
        creator.evicted = evicted
        return creator

    return make
