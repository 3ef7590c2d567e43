#
# assemble.py : Wrappers around the compressor, bootloader and ISO tools
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
import subprocess
import tempfile
import logging

from livecreate.errors import *
from livecreate.fs import makedirs, mksquashfs
from livecreate.util import call

class SquashfsCompressor(object):
    """Turns a directory tree into a single squashfs image."""

    def compress(self, source, excludes, output, blocksize="1M",
                 compression="gzip"):
        """Compress source into output, skipping the excludes patterns.

        excludes are paths relative to source; mksquashfs wildcards apply.

        """
        if os.path.exists(output):
            os.unlink(output)
        makedirs(os.path.dirname(output))

        logging.info("Creating squashfs image %s" % output)
        mksquashfs(source, output, compression, excludes, blocksize)

        if not os.path.isfile(output):
            raise SquashfsError("squashfs image %s was not created" % output)


class GrubGenerator(object):
    """Creates standalone GRUB EFI loaders and the FAT image holding them."""

    def generate_standalone_loader(self, fmt, config, output):
        """Build a standalone GRUB image for fmt with config embedded as
        boot/grub/grub.cfg."""
        makedirs(os.path.dirname(output))

        (fd, cfgpath) = tempfile.mkstemp(prefix="grub-", suffix=".cfg")
        os.write(fd, config.encode("utf-8"))
        os.close(fd)
        try:
            args = ["grub-mkstandalone",
                    "--format=%s" % fmt,
                    "--output=%s" % output,
                    "--locales=",
                    "--fonts=",
                    "boot/grub/grub.cfg=%s" % cfgpath]
            if call(args) != 0:
                raise CreatorError("Failed to create the %s loader %s" %
                                   (fmt, output))
        finally:
            os.unlink(cfgpath)

    def assemble_fat_image(self, files, output, size_mb=5):
        """Create a FAT image containing files.

        files -- a list of (source path, destination directory) pairs,
                 e.g. ('/tmp/BOOTX64.EFI', '/EFI/BOOT')

        """
        with open(output, "wb") as f:
            f.truncate(size_mb * 1024 * 1024)

        if call(["mkfs.vfat", output]) != 0:
            raise CreatorError("Failed to format EFI image %s" % output)

        created = set()
        for src, destdir in files:
            parts = [p for p in destdir.split("/") if p]
            for i in range(1, len(parts) + 1):
                d = "::/" + "/".join(parts[:i])
                if d in created:
                    continue
                if call(["mmd", "-i", output, d]) != 0:
                    raise CreatorError("Failed to create %s in %s" % (d, output))
                created.add(d)
            dest = "::/" + "/".join(parts) + "/"
            if call(["mcopy", "-i", output, src, dest]) != 0:
                raise CreatorError("Failed to copy %s into %s" % (src, output))


class XorrisoAssembler(object):
    """Assembles the final hybrid BIOS and EFI bootable ISO."""

    def __init__(self, appid="Live CD", publisher="livecreate",
                 preparer="livecreate"):
        self.appid = appid
        self.publisher = publisher
        self.preparer = preparer

    def get_args(self, isodir, boot, volid, output):
        args = ["xorriso", "-as", "mkisofs",
                "-iso-level", "3",
                "-full-iso9660-filenames",
                "-volid", volid,
                "-appid", self.appid,
                "-publisher", self.publisher,
                "-preparer", self.preparer]

        if boot.get("bios_image"):
            args += ["-eltorito-boot", boot["bios_image"],
                     "-eltorito-catalog", boot["bios_catalog"],
                     "-no-emul-boot", "-boot-load-size", "4",
                     "-boot-info-table"]
        if boot.get("efi_image"):
            args += ["-eltorito-alt-boot",
                     "-e", boot["efi_image"],
                     "-no-emul-boot",
                     "-isohybrid-gpt-basdat"]
        if boot.get("mbr"):
            args += ["-isohybrid-mbr", boot["mbr"]]

        args += ["-output", output, isodir]
        return args

    def assemble(self, isodir, boot, volid, output):
        """Build output from isodir.

        boot -- a dict with the ISO-relative 'bios_image', 'bios_catalog'
                and 'efi_image' paths and the host 'mbr' template

        """
        args = self.get_args(isodir, boot, volid, output)
        logging.info("Creating ISO %s" % output)
        if subprocess.call(args) != 0:
            raise CreatorError("ISO creation failed!")
