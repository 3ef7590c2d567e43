# coding: utf-8
#
# fs.py : Filesystem related utilities and classes
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
import sys
import errno
import re
import signal
import subprocess
import logging

from livecreate.util import *
from livecreate.errors import *

umount_fail_fmt = ("Unable to unmount filesystem at %s. A process still "
                   "holds a reference to the filesystem; it was detached "
                   "lazily and will be swept again before the working tree "
                   "is removed.")

def chrootentitycheck(entity, chrootdir):
    """Check for entity availability in the chroot image.

    This is a blind check--be sure that the entity command is innocuous.
    """
    def _chroot():
        os.chroot(chrootdir)
        os.chdir('/')

    with open(os.devnull, 'w') as DEVNULL:
        try:
            subprocess.call(entity, stdout=DEVNULL, stderr=DEVNULL,
                            preexec_fn=_chroot)
        except OSError as e:
            if e.errno == errno.ENOENT:
                logging.info("The '%s' entity is not available." % entity)
                return False
            raise
        else:
            return True

def makedirs(dirname, dirmode=None):
    """A version of os.makedirs() that doesn't throw an
    exception if the leaf directory already exists.
    """

    dirmode = dirmode or 0o777
    try:
        os.makedirs(dirname, dirmode, exist_ok=True)
    except OSError as e:
        if e.errno != errno.EEXIST:
            raise

def is_under(path, root):
    """Return True if path is root itself or lies beneath it."""
    root = root.rstrip('/') or '/'
    if root == '/':
        return path.startswith('/')
    return path == root or path.startswith(root + '/')

def path_depth(path):
    return len([p for p in path.split('/') if p])

def _unescape_mountinfo(field):
    # mountinfo escapes space, tab, newline and backslash as \ooo
    return re.sub(r'\\([0-7]{3})', lambda m: chr(int(m.group(1), 8)), field)

def mounted_paths(mountinfo="/proc/self/mountinfo"):
    """Return the mount points of the live mount table, in mount order."""
    paths = []
    try:
        with open(mountinfo, 'r', encoding='utf-8', errors='replace') as f:
            for line in f:
                fields = line.split()
                if len(fields) < 5:
                    continue
                paths.append(_unescape_mountinfo(fields[4]))
    except IOError as e:
        raise MountError("Cannot read mount table '%s' : %s" %
                         (mountinfo, e.strerror))
    return paths

def mksquashfs(in_dir, out_img, compress_args, excludes=None, blocksize=None):

    args = ['mksquashfs', in_dir, out_img, '-noappend', '-no-recovery']
    # Allow gzip to work for older versions of mksquashfs
    if compress_args and compress_args != 'gzip':
        if compress_args in ('xz1m', 'xz1M'):
            compress_args = "xz -Xdict-size 1M"
        args += ['-comp'] + compress_args.split()
    if blocksize:
        args += ['-b', str(blocksize)]
    if excludes:
        args += ['-wildcards', '-e'] + list(excludes)

    if not sys.stdout.isatty():
        args.append('-no-progress')

    ret = call(args)
    if ret != 0:
        raise SquashfsError("'%s' exited with error (%d)" %
                            (' '.join(args), ret))


class ChrootMount(object):
    """Represents a bind or virtual filesystem mount inside a chroot.

    src -- the host path for bind mounts, or the source name (e.g. 'proc')
           for virtual filesystems

    chroot -- the root directory the mount is layered onto

    dest -- the path inside the chroot; defaults to src

    fstype -- the filesystem type for non-bind mounts, e.g. 'sysfs'

    bind -- whether this is a bind mount

    """
    def __init__(self, src, chroot, dest=None, fstype=None, bind=True, ops=''):
        self.src = src
        self.root = os.path.realpath(chroot)
        self.fstype = fstype
        self.bind = bind
        self.ops = ops

        if not dest:
            dest = src
        self.dest = os.path.join(self.root, dest.lstrip('/'))
        self.mountdir = self.dest

        self.mounted = False

    def __repr__(self):
        return "<ChrootMount %s on %s>" % (self.src, self.dest)

    def mount_args(self):
        if self.bind:
            args = ['mount', '--bind', self.src, self.dest]
        else:
            args = ['mount', '-t', self.fstype, self.src, self.dest]
        if self.ops:
            args[1:1] = ['-o', self.ops]
        return args

    def prepare(self, dirmode=None):
        """Create the mount point for this mount."""
        if self.bind and os.path.isfile(self.src):
            makedirs(os.path.dirname(self.dest))
            if not os.path.exists(self.dest):
                open(self.dest, 'a').close()
        else:
            makedirs(self.dest, dirmode)


class MountTracker(object):
    """Records every mount layered onto a working root and unwinds them.

    Mounts are recorded in creation order and are always torn down in the
    reverse order. unwind_all() never stops at the first failure: a nested
    mount that refuses to go away must not block attempts on the mounts
    above it. After the recorded mounts, the live mount table is swept for
    anything else under the root, e.g. residue of a crashed earlier run.

    runner -- a callable taking an argument list and returning an exit
              code; defaults to util.call()

    list_mounts -- a callable returning the live mount points; defaults to
                   reading /proc/self/mountinfo

    """
    def __init__(self, root, runner=None, list_mounts=None):
        self.root = os.path.realpath(root)
        self.mounts = []
        self.unwind_log = []

        self.runner = runner or call
        self.list_mounts = list_mounts or mounted_paths

    def register(self, mount):
        """Perform the mount and record it only if it succeeded."""
        mount.prepare()

        logging.info("Mounting %s at %s" % (mount.src, mount.dest))
        rc = self.runner(mount.mount_args())
        if rc != 0:
            raise MountError("Mounting '%s' to '%s' failed" %
                             (mount.src, mount.dest))

        mount.mounted = True
        self.mounts.append(mount)
        return mount

    def residual(self):
        """Return the live mount points under the root.

        The root itself may be a mount point, e.g. a dedicated scratch disk;
        it belongs to the operator and is never reported or unmounted.

        """
        return [p for p in self.list_mounts()
                if p != self.root and is_under(p, self.root)]

    def __unmount(self, path):
        if path not in self.list_mounts():
            return True

        self.unwind_log.append(path)
        logging.info("Unmounting directory %s" % path)
        if self.runner(['umount', path]) == 0:
            return True

        logging.warning("%s is busy, falling back to a lazy unmount" % path)
        if self.runner(['umount', '-l', '-f', path]) == 0:
            return True

        logging.warning(umount_fail_fmt % path)
        return False

    def unwind_all(self):
        """Unmount everything under the root, deepest and newest first.

        Returns the list of mount points whose unmount failed. This may be
        called any number of times.

        """
        failures = []
        while self.mounts:
            m = self.mounts.pop()
            if not self.__unmount(m.dest):
                failures.append(m.dest)
            m.mounted = False

        leftover = sorted(self.residual(), key=path_depth, reverse=True)
        for path in leftover:
            logging.warning("Sweeping leftover mount %s" % path)
            if not self.__unmount(path) and path not in failures:
                failures.append(path)

        return failures


def find_holders(path, proc="/proc"):
    """Return the pids with a cwd, root, executable or open file under path."""
    path = os.path.realpath(path)
    me = os.getpid()
    pids = set()

    for entry in os.listdir(proc):
        if not entry.isdigit() or int(entry) == me:
            continue
        piddir = os.path.join(proc, entry)
        links = [os.path.join(piddir, l) for l in ("cwd", "root", "exe")]
        try:
            links += [os.path.join(piddir, "fd", fd)
                      for fd in os.listdir(os.path.join(piddir, "fd"))]
        except OSError:
            pass

        for link in links:
            try:
                target = os.readlink(link)
            except OSError:
                continue
            if target.endswith(" (deleted)"):
                target = target[:-len(" (deleted)")]
            if is_under(target, path):
                pids.add(int(entry))
                break

    return sorted(pids)

def evict_processes(path, sig=signal.SIGTERM, proc="/proc", kill=os.kill):
    """Signal every process holding something open under path.

    Uses /proc when available and lsof otherwise. If neither can be used
    nothing is signalled and a warning is logged. Returns the number of
    processes signalled.

    """
    if not os.path.exists(path):
        return 0

    if os.path.isdir(proc):
        pids = find_holders(path, proc)
    else:
        out, err, rc = rcall(['lsof', '-t', '+D', path], raise_err=False)
        if rc == 127:
            logging.warning("Neither %s nor lsof is available; not evicting "
                            "processes under %s" % (proc, path))
            return 0
        pids = sorted(set(int(p) for p in out.split() if p.isdigit())
                      - set([os.getpid()]))

    count = 0
    for pid in pids:
        try:
            kill(pid, sig)
        except ProcessLookupError:
            continue
        except PermissionError as e:
            logging.warning("Cannot signal process %d : %s" % (pid, e))
            continue
        logging.info("Sent signal %d to process %d holding %s" %
                     (sig, pid, path))
        count += 1
    return count
