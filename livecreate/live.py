#
# live.py : LiveImageCreator class for creating Live CD images
#
# Copyright 2024, livecreate contributors
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; version 2 of the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Library General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 59 Temple Place - Suite 330, Boston, MA 02111-1307, USA.

import os
import os.path
import glob
import re
import shutil
import hashlib
import logging

from livecreate.errors import *
from livecreate.fs import *
from livecreate.creator import *
from livecreate.stages import Stage
from livecreate.util import call
from livecreate.assemble import (SquashfsCompressor, GrubGenerator,
                                 XorrisoAssembler)
from livecreate import kickstart

FSLABEL_MAXLEN = 32
"""The maximum string length supported for LiveImageCreator.fslabel."""

EXCLUDES = ("proc/*", "sys/*", "dev/*", "run/*", "tmp/*", "mnt/*")
"""Contents of the install root which are left out of the squashfs."""

PERSISTENCE_CONF = "/ union\n/home union\n/opt union\n"

def version_key(version):
    """Return a sort key ordering version strings the way sort -V does."""
    key = []
    for part in re.findall(r"\d+|\D+", version):
        if part.isdigit():
            key.append((0, int(part), ""))
        else:
            key.append((1, 0, part))
    return key

def select_kernel(versions):
    """Return the highest of the installed kernel versions."""
    if not versions:
        raise CreatorError("No kernels installed")
    return max(versions, key=version_key)

def get_kernel_versions(instroot):
    """Return the versions of the kernels in instroot's /boot."""
    prefix = instroot + "/boot/vmlinuz-"
    return [k[len(prefix):] for k in glob.glob(prefix + "*")]


class BootEntry(object):
    """A bootloader menu entry for the kernel and initrd on the ISO."""
    def __init__(self, short, label, args):
        self.short = short
        self.label = label
        self.args = args

    def __repr__(self):
        return "<BootEntry %s>" % self.short


class PersistenceVolume(object):
    """The writable overlay image casper picks up by its label."""
    def __init__(self, size_mb, fstype, label):
        self.size_mb = size_mb
        self.fstype = fstype
        self.label = label


class BuildArtifact(object):
    """What package() produced: the squashfs, the boot files and the ISO."""
    def __init__(self, rootfs, bootloader_files, image):
        self.rootfs = rootfs
        self.bootloader_files = bootloader_files
        self.image = image


class LiveImageCreator(ImageCreator):
    """Creates a bootable hybrid BIOS and EFI live ISO.

    The install root is compressed to casper/filesystem.squashfs and booted
    through casper, with GRUB for EFI and isolinux for BIOS machines. A
    persistence image is staged next to the squashfs.

    """

    def __init__(self, ks, name, workdir, destination, fslabel=None,
                 title="Live CD", compressor=None, bootloader=None,
                 assembler=None, **kwargs):
        """Initialise a LiveImageCreator instance.

        This method takes the same arguments as ImageCreator.__init__(),
        plus:

        fslabel -- the ISO volume id; defaults to the image name

        title -- the name shown in the boot menus

        compressor, bootloader, assembler -- replacements for the
                  SquashfsCompressor, GrubGenerator and XorrisoAssembler

        """
        ImageCreator.__init__(self, ks, name, workdir, destination, **kwargs)

        self.__fslabel = None
        self.fslabel = fslabel
        self.title = title

        self.compressor = compressor or SquashfsCompressor()
        self.bootloader = bootloader or GrubGenerator()
        self.assembler = assembler or XorrisoAssembler(appid=title)

        self.compress_type = "gzip"
        """mksquashfs compressor to use."""

        self.blocksize = "1M"

        self.min_rootfs_size = 100000000
        """Smaller squashfs images are treated as a failed build."""

        self._timeout = kickstart.get_timeout(self.ks, 10)
        """The bootloader timeout from kickstart."""

        self.persistence = PersistenceVolume(*kickstart.get_persistence(self.ks))

        self.isolinux_bin = "/usr/lib/ISOLINUX/isolinux.bin"
        self.syslinux_modules = "/usr/lib/syslinux/modules/bios"
        self.isohybrid_mbr = "/usr/lib/ISOLINUX/isohdpfx.bin"

        self.artifact = None

    #
    # Properties
    #
    def __get_fslabel(self):
        if self.__fslabel is None:
            return self.name[:FSLABEL_MAXLEN]
        else:
            return self.__fslabel
    def __set_fslabel(self, val):
        if val is None:
            self.__fslabel = None
        else:
            self.__fslabel = val[:FSLABEL_MAXLEN]
    fslabel = property(__get_fslabel, __set_fslabel)
    """A string used as the ISO volume id and the GRUB search label.

    If not set, it defaults to the image name. Longer values are silently
    truncated to FSLABEL_MAXLEN (32) characters.

    """

    def __get_isodir(self):
        return self.workdir + "/iso"
    _isodir = property(__get_isodir)
    """The directory where the contents of the ISO are staged."""

    #
    # Hooks
    #
    def _prepare_workdir(self):
        ImageCreator._prepare_workdir(self)
        for d in ("casper", "boot/grub", "isolinux", "EFI/BOOT"):
            makedirs(os.path.join(self._isodir, d))

    def _get_required_packages(self):
        return ["linux-generic", "casper"]

    def _get_required_tools(self):
        return ImageCreator._get_required_tools(self) + \
               ["mksquashfs", "xorriso", "grub-mkstandalone", "mkfs.vfat",
                "mmd", "mcopy", "mkfs." + self.persistence.fstype]

    def _post_install_check(self, instroot):
        if not get_kernel_versions(instroot):
            raise CreatorError("No kernel found in %s/boot after installing "
                               "%s" % (instroot,
                                       ", ".join(self._get_required_packages())))

    def _get_post_scripts_env(self, in_chroot):
        env = ImageCreator._get_post_scripts_env(self, in_chroot)

        if not in_chroot:
            env["LIVE_ROOT"] = self._isodir

        return env

    def _get_kernel_options(self):
        """Return the kernel arguments shared by every boot entry."""
        return kickstart.get_kernel_args(self.ks)

    def _get_boot_entries(self):
        return [BootEntry("live", self.title + " (Persistent)",
                          "boot=casper persistent quiet splash"),
                BootEntry("live-nopersist", self.title + " (No Persistence)",
                          "boot=casper quiet splash"),
                BootEntry("recovery", self.title + " (Recovery Mode)",
                          "boot=casper noapic noacpi nosplash irqpoll")]

    def _get_stages(self):
        return ImageCreator._get_stages(self) + \
               [Stage("manifest", self._write_manifest, chroot=True),
                Stage("persistence", self._create_persistence)]

    def _get_assembly_stages(self):
        return [Stage("compress", self._compress, destructive=True),
                Stage("bootloader", self._configure_bootloader,
                      precondition=lambda root: bool(get_kernel_versions(root))),
                Stage("iso", self._create_iso)]

    def _get_final_image(self):
        return self._outdir + "/" + self.name + ".iso"

    def package(self):
        """Compress the install root and build the bootable ISO.

        Returns a BuildArtifact describing what was produced.

        """
        ImageCreator.package(self)
        return self.artifact

    #
    # Staging
    #
    def _write_manifest(self, instroot):
        manifest = self.provisioner.get_manifest(instroot)
        with open(self._isodir + "/casper/filesystem.manifest", "w") as f:
            f.write(manifest)

    def _format_persistence(self, image):
        args = ["mkfs." + self.persistence.fstype]
        if self.persistence.fstype.startswith("ext"):
            args.append("-F")
        args += ["-L", self.persistence.label, image]
        if call(args) != 0:
            raise CreatorError("Failed to format persistence image %s" % image)

    def _create_persistence(self, instroot):
        confdir = self._isodir + "/persistence"
        makedirs(confdir)
        with open(confdir + "/persistence.conf", "w") as f:
            f.write(PERSISTENCE_CONF)

        image = self._isodir + "/casper/persistence.img"
        logging.info("Creating %d MB persistence image %s" %
                     (self.persistence.size_mb, image))
        with open(image, "wb") as f:
            f.truncate(self.persistence.size_mb * 1024 * 1024)
        self._format_persistence(image)

    #
    # Assembly
    #
    def _compress(self, instroot):
        rootfs = self._isodir + "/casper/filesystem.squashfs"
        self.compressor.compress(instroot, EXCLUDES, rootfs,
                                 self.blocksize, self.compress_type)

        size = os.stat(rootfs).st_size
        if size < self.min_rootfs_size:
            raise ArtifactSizeError("compress", rootfs, size,
                                    self.min_rootfs_size)
        logging.info("squashfs image is %d bytes" % size)

    def __copy_kernel_and_initramfs(self, instroot, version):
        casper = self._isodir + "/casper"
        shutil.copyfile("%s/boot/vmlinuz-%s" % (instroot, version),
                        casper + "/vmlinuz")
        initrd = "%s/boot/initrd.img-%s" % (instroot, version)
        if not os.path.exists(initrd):
            raise CreatorError("No initrd found for kernel %s" % version)
        shutil.copyfile(initrd, casper + "/initrd")

    def __get_basic_grub_config(self, **args):
        return """set timeout=%(timeout)d
set default=0

search --no-floppy --set=root -l '%(fslabel)s'

""" % args

    def __get_grub_stanza(self, **args):
        return """menuentry "%(label)s" {
    linux /casper/vmlinuz %(args)s %(extra)s---
    initrd /casper/initrd
}

""" % args

    def __get_basic_isolinux_config(self, **args):
        return """UI vesamenu.c32
TIMEOUT %(timeout)d

MENU TITLE %(title)s
DEFAULT %(default)s
""" % args

    def __get_isolinux_stanza(self, **args):
        return """LABEL %(short)s
  MENU LABEL %(label)s
  KERNEL /casper/vmlinuz
  APPEND initrd=/casper/initrd %(args)s %(extra)s---
""" % args

    def _get_grub_config(self):
        extra = self._get_kernel_options()
        if extra:
            extra += " "
        cfg = self.__get_basic_grub_config(timeout = self._timeout,
                                           fslabel = self.fslabel)
        for entry in self._get_boot_entries():
            cfg += self.__get_grub_stanza(label = entry.label,
                                          args = entry.args, extra = extra)
        return cfg

    def _get_isolinux_config(self):
        extra = self._get_kernel_options()
        if extra:
            extra += " "
        entries = self._get_boot_entries()
        # isolinux counts in tenths of a second
        cfg = self.__get_basic_isolinux_config(timeout = self._timeout * 10,
                                               title = self.title,
                                               default = entries[0].short)
        for entry in entries:
            cfg += self.__get_isolinux_stanza(short = entry.short,
                                              label = entry.label,
                                              args = entry.args, extra = extra)
        return cfg

    def __copy_isolinux_files(self):
        isolinux = self._isodir + "/isolinux"
        if not os.path.isfile(self.isolinux_bin):
            raise CreatorError("isolinux not found at %s" % self.isolinux_bin)
        shutil.copy(self.isolinux_bin, isolinux)

        modules = glob.glob(self.syslinux_modules + "/*.c32")
        if not modules:
            raise CreatorError("No syslinux modules found in %s" %
                               self.syslinux_modules)
        for m in modules:
            shutil.copy(m, isolinux)

    def _configure_bootloader(self, instroot):
        """Copy the kernel and write the GRUB, EFI and isolinux boot files."""
        version = select_kernel(get_kernel_versions(instroot))
        logging.info("Using kernel %s" % version)
        self.__copy_kernel_and_initramfs(instroot, version)

        grubcfg = self._get_grub_config()
        with open(self._isodir + "/boot/grub/grub.cfg", "w") as f:
            f.write(grubcfg)

        bootx64 = self._isodir + "/EFI/BOOT/BOOTX64.EFI"
        self.bootloader.generate_standalone_loader("x86_64-efi", grubcfg,
                                                   bootx64)
        self.bootloader.assemble_fat_image([(bootx64, "/EFI/BOOT")],
                                           self._isodir + "/efi.img")

        with open(self._isodir + "/isolinux/isolinux.cfg", "w") as f:
            f.write(self._get_isolinux_config())
        self.__copy_isolinux_files()

    def __write_md5sums(self):
        isodir = self._isodir
        md5file = isodir + "/md5sum.txt"
        sums = []
        for dirpath, dirnames, filenames in os.walk(isodir):
            dirnames.sort()
            for fn in sorted(filenames):
                path = os.path.join(dirpath, fn)
                if path == md5file or os.path.islink(path):
                    continue
                md5 = hashlib.md5()
                with open(path, "rb") as f:
                    for chunk in iter(lambda: f.read(1024 * 1024), b""):
                        md5.update(chunk)
                sums.append("%s  ./%s\n" % (md5.hexdigest(),
                                            os.path.relpath(path, isodir)))
        with open(md5file, "w") as f:
            f.writelines(sums)

    def _create_iso(self, instroot):
        self.__write_md5sums()

        iso = self._get_final_image()
        boot = {"bios_image": "isolinux/isolinux.bin",
                "bios_catalog": "isolinux/boot.cat",
                "efi_image": "efi.img",
                "mbr": self.isohybrid_mbr}
        self.assembler.assemble(self._isodir, boot, self.fslabel, iso)

        self.artifact = BuildArtifact(
            self._isodir + "/casper/filesystem.squashfs",
            [self._isodir + "/boot/grub/grub.cfg",
             self._isodir + "/EFI/BOOT/BOOTX64.EFI",
             self._isodir + "/efi.img",
             self._isodir + "/isolinux/isolinux.cfg"],
            iso)
