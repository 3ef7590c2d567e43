#
# stages.py : Named units of pipeline work and their executor
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
import subprocess
import tempfile
import logging

from livecreate.errors import *

def chroot_preexec(instroot):
    """Return a preexec_fn which chroot()s into instroot."""
    def _chroot():
        os.chroot(instroot)
        os.chdir("/")
    return _chroot

def chroot_call(instroot, args, env=None, input=None):
    """Run args chroot()ed into instroot, raising CreatorError on failure."""
    environ = os.environ.copy()
    if env:
        environ.update(env)

    logging.info("Running in %s: %s" % (instroot, " ".join(args)))
    try:
        subprocess.run(args, preexec_fn=chroot_preexec(instroot), env=environ,
                       input=input, check=True)
    except OSError as e:
        raise CreatorError("Failed to execute '%s' in %s : %s" %
                           (args[0], instroot, e.strerror))
    except subprocess.CalledProcessError as e:
        raise CreatorError("'%s' failed in %s with code %d" %
                           (" ".join(args), instroot, e.returncode))

def script_action(script, interp="/bin/bash", in_chroot=True, env=None):
    """Return a stage action running a shell script against the root.

    Scripts run inside the chroot are written to /tmp in the root; the
    others receive the root as INSTALL_ROOT in their environment.

    """
    def action(instroot):
        tmpdir = os.path.join(instroot, "tmp")
        if not os.path.isdir(tmpdir):
            os.makedirs(tmpdir)
        (fd, path) = tempfile.mkstemp(prefix="stage-script-", dir=tmpdir)
        os.write(fd, script.encode("utf-8"))
        os.close(fd)
        os.chmod(path, 0o700)

        try:
            if in_chroot:
                chroot_call(instroot,
                            [interp, "/tmp/" + os.path.basename(path)], env)
            else:
                environ = os.environ.copy()
                environ.update(env or {})
                environ["INSTALL_ROOT"] = instroot
                subprocess.check_call([interp, path], env=environ)
        finally:
            os.unlink(path)
    return action


class Stage(object):
    """A named unit of pipeline work.

    name -- used in logs and in StageError

    action -- a callable taking the install root path

    precondition -- an optional callable taking the install root path;
                    the stage fails if it returns False

    destructive -- whether the stage destroys or replaces data; destructive
                   stages are never retried and require an unmounted root

    chroot -- whether the stage needs the chroot mounts in place

    retries -- how many extra attempts the controller may make

    """
    def __init__(self, name, action, precondition=None, destructive=False,
                 chroot=False, retries=0):
        self.name = name
        self.action = action
        self.precondition = precondition
        self.destructive = destructive
        self.chroot = chroot
        self.retries = retries

    def __repr__(self):
        return "<Stage %s>" % self.name


class StageExecutor(object):
    """Runs a single stage against the install root."""

    def run(self, stage, instroot):
        if stage.precondition is not None and not stage.precondition(instroot):
            raise StageError(stage.name, "precondition not met")

        logging.info("Starting stage: %s" % stage.name)
        try:
            stage.action(instroot)
        except StageError:
            raise
        except (CreatorError, OSError, subprocess.CalledProcessError) as e:
            raise StageError(stage.name, e)
        logging.info("Finished stage: %s" % stage.name)
