#
# provision.py : debootstrap/apt utilities
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

import glob
import os
import os.path
import shutil
import logging

from livecreate.errors import *
from livecreate.util import call, rcall
from livecreate.stages import chroot_call, chroot_preexec

INSTALL_NO_RECOMMENDS = "no-install-recommends"
"""Install option: do not pull in recommended packages."""

UPDATE_INDEX_FIRST = "update-index-first"
"""Install option: refresh the package index before installing."""

DEFAULT_COMPONENTS = "main restricted universe multiverse"

POLICY_RC_D = "#!/bin/sh\nexit 101\n"

class AptProvisioner(object):
    """Populates an install root with debootstrap and apt-get.

    All apt-get invocations run chroot()ed into the install root, so the
    chroot mounts must be in place before install_packages() is called.

    """
    def __init__(self, releasever, mirror, arch="amd64",
                 components=DEFAULT_COMPONENTS, foreign_arches=()):
        self.releasever = releasever
        self.mirror = mirror
        self.arch = arch
        self.components = components
        self.foreign_arches = list(foreign_arches)

    def _env(self):
        return {"DEBIAN_FRONTEND": "noninteractive",
                "LANG": "C.UTF-8",
                "LC_ALL": "C.UTF-8"}

    def bootstrap(self, instroot):
        """Stage a minimal base system into instroot."""
        args = ["debootstrap", "--arch=%s" % self.arch, self.releasever,
                instroot, self.mirror]
        logging.info("Bootstrapping %s (%s) from %s" %
                     (self.releasever, self.arch, self.mirror))
        rc = call(args)
        if rc != 0:
            raise CreatorError("'%s' exited with error (%d)" %
                               (' '.join(args), rc))

    def write_sources(self, instroot, repos):
        """Write /etc/apt/sources.list from (suite, baseurl) pairs."""
        if not repos:
            repos = [(self.releasever, self.mirror)]

        path = instroot + "/etc/apt/sources.list"
        if not os.path.isdir(os.path.dirname(path)):
            os.makedirs(os.path.dirname(path))
        with open(path, "w") as f:
            for suite, baseurl in repos:
                f.write("deb %s %s %s\n" % (baseurl, suite, self.components))

    def setup(self, instroot):
        """Prepare the root for package installation."""
        policy = instroot + "/usr/sbin/policy-rc.d"
        if not os.path.isdir(os.path.dirname(policy)):
            os.makedirs(os.path.dirname(policy))
        with open(policy, "w") as f:
            f.write(POLICY_RC_D)
        os.chmod(policy, 0o755)

        resolv = instroot + "/etc/resolv.conf"
        if os.path.islink(resolv):
            os.unlink(resolv)
        if os.path.exists("/etc/resolv.conf"):
            if not os.path.isdir(os.path.dirname(resolv)):
                os.makedirs(os.path.dirname(resolv))
            shutil.copyfile("/etc/resolv.conf", resolv)

        for arch in self.foreign_arches:
            chroot_call(instroot, ["dpkg", "--add-architecture", arch],
                        self._env())

    def close(self, instroot):
        """Undo setup(); safe to call more than once."""
        try:
            os.unlink(instroot + "/usr/sbin/policy-rc.d")
        except FileNotFoundError:
            pass

    def install_packages(self, instroot, packages, options=()):
        """Install packages into instroot.

        options -- a collection of INSTALL_NO_RECOMMENDS and
                   UPDATE_INDEX_FIRST

        A package name with a trailing '-' is removed instead, as apt-get
        install does.

        """
        env = self._env()
        if UPDATE_INDEX_FIRST in options:
            chroot_call(instroot, ["apt-get", "update", "-y"], env)

        if not packages:
            return

        args = ["apt-get", "install", "-y"]
        if INSTALL_NO_RECOMMENDS in options:
            args.append("--no-install-recommends")
        chroot_call(instroot, args + list(packages), env)

    def clean(self, instroot):
        """Drop downloaded archives, package lists and scratch files."""
        chroot_call(instroot, ["apt-get", "clean"], self._env())
        for pattern in ("/var/lib/apt/lists/*", "/tmp/*"):
            for path in glob.glob(instroot + pattern):
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path, ignore_errors=True)
                else:
                    os.unlink(path)

    def get_manifest(self, instroot):
        """Return the installed-package listing, one 'name version' per line."""
        out, err, rc = rcall(["dpkg-query", "-W",
                              "--showformat=${Package} ${Version}\\n"],
                             preexec_fn=chroot_preexec(instroot))
        return out
