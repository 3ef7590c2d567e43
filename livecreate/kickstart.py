#
# kickstart.py : Apply kickstart configuration to a system
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
import errno
import os.path
import shutil
import subprocess
import time
import logging

import urlgrabber

import pykickstart.constants as ksconstants
import pykickstart.errors as kserrors
import pykickstart.parser as ksparser
import pykickstart.version as ksversion

import livecreate.errors as errors
import livecreate.fs as fs

def read_kickstart(path):
    """Parse a kickstart file and return a KickstartParser instance.

    This is a simple utility function which takes a path to a kickstart file,
    parses it and returns a pykickstart KickstartParser instance which can
    be then passed to an ImageCreator constructor.

    If an error occurs, a CreatorError exception is thrown.

    """
    version = ksversion.makeVersion()
    ks = ksparser.KickstartParser(version)
    try:
        # If kickstart file exists on the local filesystem, open it directly
        # so pykickstart knows how to handle relative %include. Otherwise,
        # treat as URL and download to temporary file before parsing.
        if os.path.exists(path):
            ks.readKickstart(path)
        else:
            tmpks = '.kstmp.{}'.format(os.getpid())
            urlgrabber.urlgrab(path, filename=tmpks)
            try:
                ks.readKickstart(tmpks)
            finally:
                os.unlink(tmpks)
    # Fallback to e.args[0] is a workaround for bugs in urlgrabber and pykickstart.
    except IOError as e:
        raise errors.KickstartError("Failed to read kickstart file "
                                    "'%s' : %s" % (path, e.strerror or
                                    e.args[0]))
    except kserrors.KickstartError as e:
        raise errors.KickstartError("Failed to parse kickstart file "
                                    "'%s' : %s" % (path, e))
    return ks

def build_name(kscfg, prefix = None, suffix = None, maxlen = None):
    """Construct and return an image name string.

    The name is constructed using the sans-prefix-and-extension kickstart
    filename and the supplied prefix and suffix. If the name exceeds maxlen,
    the prefix is dropped first and then the kickstart portion is shortened.

    kscfg -- a path to a kickstart file
    prefix -- a prefix to prepend to the name; defaults to None, which causes
              no prefix to be used
    suffix -- a suffix to append to the name; defaults to None, which causes
              a YYYYMMDDHHMM suffix to be used
    maxlen -- the maximum length for the returned string; defaults to None,
              which means there is no restriction on the name length

    """
    name = os.path.basename(kscfg)
    idx = name.rfind('.')
    if idx >= 0:
        name = name[:idx]

    if prefix is None:
        prefix = ""
    if suffix is None:
        suffix = time.strftime("%Y%m%d%H%M")

    if name.startswith(prefix):
        name = name[len(prefix):]

    ret = prefix + name + "-" + suffix
    if not maxlen is None and len(ret) > maxlen:
        ret = name[:maxlen - len(suffix) - 1] + "-" + suffix

    return ret

class KickstartConfig(object):
    """A base class for applying kickstart configurations to a system."""
    def __init__(self, instroot):
        self.instroot = instroot

    def path(self, subpath):
        return self.instroot + subpath

    def chroot(self):
        os.chroot(self.instroot)
        os.chdir("/")

    def call(self, args, input=None):
        try:
            p = subprocess.run(args, preexec_fn=self.chroot, input=input)
        except OSError as e:
            if e.errno == errno.ENOENT:
                raise errors.KickstartError("Unable to run %s!" %(args))
            raise
        if p.returncode != 0:
            logging.warning("%s exited with code %d" % (args, p.returncode))
        return p.returncode

    def apply(self):
        pass

class LanguageConfig(KickstartConfig):
    """A class to apply a kickstart language configuration to a system."""
    def apply(self, kslang):
        lang = kslang.lang or "en_US.UTF-8"

        fs.makedirs(self.path("/etc/default"))
        with open(self.path("/etc/default/locale"), "w") as f:
            f.write("LANG=\"" + lang + "\"\n")

        if os.path.exists(self.path("/usr/sbin/locale-gen")):
            self.call(["locale-gen", lang])

class KeyboardConfig(KickstartConfig):
    """A class to apply a kickstart keyboard configuration to a system."""
    def apply(self, kskeyboard):
        layout = getattr(kskeyboard, "keyboard", None) or "us"

        fs.makedirs(self.path("/etc/default"))
        try:
            with open(self.path("/etc/default/keyboard"), "w") as f:
                f.write('XKBMODEL="pc105"\n')
                f.write('XKBLAYOUT="%s"\n' % layout)
                f.write('BACKSPACE="guess"\n')
        except IOError as e:
            logging.error("Cannot write keyboard configuration file: %s" % e)

class TimezoneConfig(KickstartConfig):
    """A class to apply a kickstart timezone configuration to a system."""
    def apply(self, kstimezone):
        tz = kstimezone.timezone or "Etc/UTC"

        fs.makedirs(self.path("/etc"))
        with open(self.path("/etc/timezone"), "w") as f:
            f.write(tz + "\n")

        # if /etc/localtime exists as a file keep it as a file and fall
        # back to a symlink.
        localtime = self.path("/etc/localtime")
        if os.path.isfile(localtime) and \
           not os.path.islink(localtime):
            try:
                shutil.copy2(self.path("/usr/share/zoneinfo/%s" %(tz,)),
                                localtime)
            except (OSError, shutil.Error) as e:
                logging.error("Error copying timezone: %s" %(e.strerror,))
        else:
            if os.path.lexists(localtime):
                os.unlink(localtime)
            os.symlink("/usr/share/zoneinfo/%s" %(tz,), localtime)

class RootPasswordConfig(KickstartConfig):
    """A class to apply a kickstart root password configuration to a system."""
    def lock(self):
        self.call(["passwd", "-l", "root"])

    def set_encrypted(self, password):
        self.call(["usermod", "-p", password, "root"])

    def set_unencrypted(self, password):
        self.call(["chpasswd"], input=("root:%s\n" % password).encode("utf-8"))

    def apply(self, ksrootpw):
        if ksrootpw.isCrypted:
            self.set_encrypted(ksrootpw.password)
        elif ksrootpw.password:
            self.set_unencrypted(ksrootpw.password)

        if ksrootpw.lock:
            self.lock()

class UserConfig(KickstartConfig):
    """A class to create the kickstart users, the first one logging in
    automatically on tty1."""
    def __init__(self, instroot, autologin=True):
        KickstartConfig.__init__(self, instroot)
        self.autologin = autologin

    def write_autologin(self, name):
        override = self.path("/etc/systemd/system/getty@tty1.service.d")
        fs.makedirs(override)
        with open(override + "/override.conf", "w") as f:
            f.write("[Service]\n")
            f.write("ExecStart=\n")
            f.write("ExecStart=-/sbin/agetty --autologin %s --noclear %%I "
                    "$TERM\n" % name)

    def apply(self, ksuser):
        for index, user in enumerate(ksuser.userList):
            args = ["useradd", "-m", "-s", user.shell or "/bin/bash"]
            if user.homedir:
                args += ["-d", user.homedir]
            if user.groups:
                args += ["-G", ",".join(user.groups)]
            self.call(args + [user.name])

            if user.password:
                args = ["chpasswd"]
                if user.isCrypted:
                    args.append("-e")
                self.call(args, input=("%s:%s\n" % (user.name, user.password))
                          .encode("utf-8"))

            if index == 0 and self.autologin:
                self.write_autologin(user.name)

class ServicesConfig(KickstartConfig):
    """A class to apply a kickstart services configuration to a system."""
    def apply(self, ksservices):
        if not (ksservices.enabled or ksservices.disabled):
            return

        if fs.chrootentitycheck('systemctl', self.instroot):
            for s in ksservices.enabled:
                subprocess.call(['systemctl', 'enable', s], preexec_fn=self.chroot)
            for s in ksservices.disabled:
                subprocess.call(['systemctl', 'disable', s], preexec_fn=self.chroot)

def get_timeout(ks, default = None):
    if not hasattr(ks.handler.bootloader, "timeout"):
        return default
    if ks.handler.bootloader.timeout is None:
        return default
    return int(ks.handler.bootloader.timeout)

def get_kernel_args(ks, default = ""):
    if not hasattr(ks.handler.bootloader, "appendLine"):
        return default
    if ks.handler.bootloader.appendLine is None:
        return default
    return ("%s %s" %(default, ks.handler.bootloader.appendLine)).strip()

def get_mirror(ks, default = None):
    if getattr(ks.handler.url, "url", None):
        return ks.handler.url.url
    for repo in ks.handler.repo.repoList:
        if repo.baseurl:
            return repo.baseurl
    return default

def get_repos(ks, releasever = None):
    """Return (suite, baseurl) pairs; the repo name is the apt suite."""
    repos = {}
    for repo in ks.handler.repo.repoList:
        name = repo.name
        baseurl = repo.baseurl
        if releasever:
            name = name.replace("$releasever", releasever)
            baseurl = baseurl and baseurl.replace("$releasever", releasever)

        if not baseurl:
            logging.warning("Skipping repo %s without a baseurl" %(name,))
            continue
        if name in repos:
            logging.warning("Overriding already specified repo %s" %(name,))
        repos[name] = (name, baseurl)

    return list(repos.values())

def get_packages(ks, required = []):
    return ks.handler.packages.packageList + required

def get_excluded(ks, required = []):
    return ks.handler.packages.excludedList + required

def exclude_weakdeps(ks):
    if hasattr(ks.handler.packages, "excludeWeakdeps"):
        if ks.handler.packages.excludeWeakdeps:
            return ks.handler.packages.excludeWeakdeps
    return False

def get_persistence(ks, default_size = 1024, default_fstype = "ext4",
                    default_label = "casper-rw"):
    """Return (size in MB, fstype, label) of the persistence volume."""
    for p in ks.handler.partition.partitions:
        if p.mountpoint != "/persistence":
            continue
        return (int(p.size) if p.size is not None else default_size,
                p.fstype or default_fstype,
                getattr(p, "label", None) or default_label)
    return (default_size, default_fstype, default_label)

def get_post_scripts(ks):
    scripts = []
    for s in ks.handler.scripts:
        if s.type != ksconstants.KS_SCRIPT_POST:
            continue
        scripts.append(s)
    return scripts
