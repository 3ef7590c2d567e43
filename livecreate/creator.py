#
# creator.py : ImageCreator base class
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
import errno
import fcntl
import shutil
import signal
import logging
import subprocess

from livecreate.errors import *
from livecreate.fs import *
from livecreate.stages import Stage, StageExecutor, script_action
from livecreate.provision import (AptProvisioner, INSTALL_NO_RECOMMENDS,
                                  UPDATE_INDEX_FIRST)
from livecreate import kickstart

DEFAULT_MIRROR = "http://archive.ubuntu.com/ubuntu/"

CHROOT_MOUNTS = (
    # (source, path in chroot, fstype, bind)
    ("/dev", "/dev", None, True),
    ("/dev/pts", "/dev/pts", None, True),
    ("proc", "/proc", "proc", False),
    ("sysfs", "/sys", "sysfs", False),
)
"""The mounts a working chroot needs, in the order they must be created."""


def _ignore_signals(signums=(signal.SIGINT, signal.SIGTERM)):
    """Ignore signums, returning the handlers to restore afterwards."""
    handlers = {}
    for signum in signums:
        try:
            handlers[signum] = signal.signal(signum, signal.SIG_IGN)
        except ValueError:
            # handlers can only be set from the main thread
            break
    return handlers

def _restore_signals(handlers):
    for signum, handler in handlers.items():
        if handler is not None:
            signal.signal(signum, handler)


class State(object):
    """The states an ImageCreator goes through."""
    UNINITIALIZED = "uninitialized"
    VERIFIED = "verified"
    RESET = "reset"
    STAGED = "staged"
    ASSEMBLED = "assembled"
    DONE = "done"
    FAILED = "failed"


class ImageCreator(object):
    """Installs a system to a chroot directory.

    ImageCreator is the simplest creator class available; it will bootstrap,
    install and configure a system according to the supplied kickstart file
    and publish the resulting tree.

    e.g.

      import livecreate
      ks = livecreate.read_kickstart("foo.ks")
      livecreate.ImageCreator(ks, "foo", "/var/tmp/foo", "/srv/foo",
                              releasever="jammy").create()

    A run goes through verify(), reset(), stage(), unmount(), package() and
    publish(). Whatever happens after verify(), cleanup() unmounts anything
    mounted under the working directory before create() returns or raises.

    """

    def __init__(self, ks, name, workdir, destination, releasever=None,
                 arch="amd64", provisioner=None, executor=None,
                 tracker_runner=None, list_mounts=None, evict=None,
                 payloads=(), host_marker=None, docleanup=True):
        """Initialize an ImageCreator instance.

        ks -- a pykickstart.KickstartParser instance; this instance will be
              used to drive the install by e.g. providing the list of packages
              to be installed, the system configuration and %post scripts

        name -- a name for the image; used for e.g. image filenames or
                filesystem labels

        workdir -- the scratch directory; it is wiped at the start of a run

        destination -- the absolute path the final artifact is published to

        releasever -- the release (suite) to bootstrap, e.g. 'jammy'

        provisioner -- an object implementing the AptProvisioner interface;
                       defaults to an AptProvisioner for releasever

        executor, tracker_runner, list_mounts, evict -- replacements for the
                       stage executor, the mount command runner, the mount
                       table reader and the process evictor

        payloads -- (source, destination) pairs copied into the install root

        host_marker -- a string which must appear in /proc/version

        """
        self.ks = ks
        """A pykickstart.KickstartParser instance."""

        self.name = name
        """A name for the image."""

        # mountinfo reports mount points with symlinks resolved
        self.workdir = os.path.realpath(workdir)
        self.destination = destination
        self.releasever = releasever
        self.arch = arch
        self.payloads = list(payloads)
        self.host_marker = host_marker
        self.docleanup = docleanup

        if provisioner is None:
            provisioner = AptProvisioner(releasever,
                                         kickstart.get_mirror(ks, DEFAULT_MIRROR),
                                         arch=arch)
        self.provisioner = provisioner
        self.executor = executor or StageExecutor()
        self.evict = evict or evict_processes
        self.tracker = MountTracker(self.workdir, tracker_runner, list_mounts)

        self.install_retries = 0
        """How many times a failed package installation is retried."""

        self.state = State.UNINITIALIZED
        self.failure = None
        """The first exception which sent the creator into State.FAILED."""
        self.failed_in = None
        self.stages_done = 0

        self.__lockfd = None

        self.__sanity_check()

    #
    # Properties
    #
    def __get_instroot(self):
        return self.workdir + "/chroot"
    _instroot = property(__get_instroot)
    """The location of the install root directory.

    This is the directory into which the system is installed. The chroot
    mounts are layered onto it while packages are installed.

    Note also, this is a read-only attribute.

    """

    def __get_outdir(self):
        return self.workdir + "/out"
    _outdir = property(__get_outdir)
    """The staging location for the final image.

    package() leaves the finished artifact here; publish() moves it to the
    destination.

    """

    #
    # Hooks for subclasses
    #
    def _prepare_workdir(self):
        """Create the directory layout of a fresh working directory.

        Subclasses should chain up to the base class implementation.

        """
        makedirs(self._instroot)
        makedirs(self._outdir)

    def _get_required_packages(self):
        """Return a list of packages installed before the kickstart ones.

        This returns an empty list by default.

        """
        return []

    def _get_required_tools(self):
        """Return the host commands a build needs.

        Subclasses should usually chain up to the base class implementation.

        """
        return ["mount", "umount", "debootstrap"]

    def _post_install_check(self, instroot):
        """Validate the install root once packages have been installed.

        There is no default implementation.

        """
        pass

    def _get_post_scripts_env(self, in_chroot):
        """Return an environment dict for %post scripts.

        By default, this returns an empty dict.

        in_chroot -- whether this %post script is to be executed chroot()ed
                     into _instroot.

        """
        return {}

    def _get_stages(self):
        """Return the ordered stages which build the install root.

        Subclasses may append their own stages; they all run before the
        chroot mounts are unwound.

        """
        return [Stage("bootstrap", self._bootstrap),
                Stage("provision", self._install, chroot=True,
                      precondition=lambda root: os.path.isdir(root + "/etc"),
                      retries=self.install_retries),
                Stage("configure", self._configure, chroot=True),
                Stage("payloads", self._copy_payloads),
                Stage("post-scripts", self._run_post_scripts, chroot=True),
                Stage("clean", self.provisioner.clean, chroot=True)]

    def _get_assembly_stages(self):
        """Return the ordered stages which package the unmounted root.

        By default, this moves the install root into _outdir.

        """
        return [Stage("stage-tree", self._stage_final_image, destructive=True)]

    def _stage_final_image(self, instroot):
        shutil.move(instroot, self._get_final_image())

    def _get_final_image(self):
        """Return the path in _outdir which publish() delivers."""
        return self._outdir + "/" + self.name

    #
    # Helpers for subclasses
    #
    def _do_bindmounts(self):
        """Mount the system directories a chroot needs onto _instroot."""
        for (src, dest, fstype, bind) in CHROOT_MOUNTS:
            self.tracker.register(ChrootMount(src, self._instroot, dest,
                                              fstype=fstype, bind=bind))

    def _undo_bindmounts(self):
        """Evict processes and unmount everything under the working directory.

        Returns the list of mount points whose unmount failed.

        """
        self.evict(self.workdir)
        return self.tracker.unwind_all()

    def _is_unmounted(self):
        return not self.tracker.residual()

    #
    # Actual implementation
    #
    def __sanity_check(self):
        """Ensure that the config we've been given is sane."""
        if not kickstart.get_packages(self.ks, self._get_required_packages()):
            raise CreatorError("No packages specified")

        if not os.path.isabs(self.destination):
            raise CreatorError("The destination '%s' is not an absolute path"
                               % self.destination)

    def __lock(self):
        lockpath = self.workdir.rstrip("/") + ".lock"
        makedirs(os.path.dirname(lockpath))
        fd = os.open(lockpath, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EAGAIN, errno.EACCES):
                raise PreconditionError("%s is in use by another build" %
                                        self.workdir)
            raise
        self.__lockfd = fd

    def __unlock(self):
        if self.__lockfd is None:
            return
        fcntl.flock(self.__lockfd, fcntl.LOCK_UN)
        os.close(self.__lockfd)
        self.__lockfd = None

    def verify(self):
        """Check that the host can run a build, before touching anything.

        Raises PreconditionError if it cannot. On success the working
        directory is locked against concurrent builds until cleanup().

        """
        if os.geteuid() != 0:
            raise PreconditionError("You must run as root")

        if self.host_marker:
            try:
                with open("/proc/version") as f:
                    version = f.read()
            except IOError as e:
                raise PreconditionError("Cannot read /proc/version : %s" %
                                        e.strerror)
            if self.host_marker.lower() not in version.lower():
                raise PreconditionError("This host is not a '%s' host" %
                                        self.host_marker)

        missing = [t for t in self._get_required_tools()
                   if shutil.which(t) is None]
        if missing:
            raise PreconditionError("Required tools not found : %s" %
                                    ", ".join(missing))

        for (src, dest) in self.payloads:
            if not os.path.exists(src):
                raise PreconditionError("Payload '%s' not found" % src)

        if (self.workdir == "/" or
                is_under(os.path.realpath(self.destination), self.workdir)):
            raise PreconditionError("Refusing to use '%s' as the working "
                                    "directory" % self.workdir)

        if not os.path.isdir(os.path.dirname(self.destination)):
            raise PreconditionError("Destination directory '%s' does not "
                                    "exist" % os.path.dirname(self.destination))

        self.__lock()

        logging.info("Work directory set to %s" % self.workdir)
        logging.info("Destination image will be saved at %s" % self.destination)
        self.state = State.VERIFIED

    def reset(self):
        """Bring the working directory to a clean slate.

        Processes holding anything open under the working directory are
        evicted and leftover mounts are unwound before the tree is removed,
        so reset() may follow a crashed or interrupted run. The tree is not
        removed while anything is still mounted under it.

        """
        failures = self._undo_bindmounts()
        residual = self.tracker.residual()
        if residual:
            raise ResidualMountError("Refusing to remove %s; still mounted : "
                                     "%s" % (self.workdir, ", ".join(residual)))
        if failures:
            logging.warning("Recovered from unmount failures : %s" %
                            ", ".join(failures))

        if os.path.lexists(self.workdir):
            logging.info("Removing existing work directory %s" % self.workdir)
            shutil.rmtree(self.workdir)

        if os.path.lexists(self.destination):
            logging.info("Destination %s exists, deleting" % self.destination)
            if os.path.isdir(self.destination) and \
               not os.path.islink(self.destination):
                shutil.rmtree(self.destination)
            else:
                os.unlink(self.destination)

        self._prepare_workdir()
        self.stages_done = 0
        self.state = State.RESET

    def __run_stage(self, stage):
        attempts = 0 if stage.destructive else stage.retries
        while True:
            try:
                self.executor.run(stage, self._instroot)
                break
            except StageError as e:
                if attempts <= 0:
                    raise
                attempts -= 1
                logging.warning("%s; retrying, %d attempt(s) left" %
                                (e, attempts))
        self.stages_done += 1

    def stage(self):
        """Run the staging stages in order.

        The chroot mounts are created just before the first stage which
        needs them.

        """
        for stage in self._get_stages():
            if stage.chroot and not self.tracker.mounts:
                self._do_bindmounts()
            self.__run_stage(stage)
        self.state = State.STAGED

    def unmount(self):
        """Unwind all mounts and make sure none survived.

        Raises ResidualMountError if anything is still mounted under the
        working directory, since packaging or deleting the tree is not safe
        then.

        """
        failures = self._undo_bindmounts()
        residual = self.tracker.residual()
        if residual:
            raise ResidualMountError("Mounts remain under %s : %s" %
                                     (self.workdir, ", ".join(residual)))
        if failures:
            logging.warning("Recovered from unmount failures : %s" %
                            ", ".join(failures))

    def package(self):
        """Turn the unmounted install root into the final artifact."""
        for stage in self._get_assembly_stages():
            if stage.destructive and not self._is_unmounted():
                raise ResidualMountError("Refusing to run '%s' with mounts "
                                         "under %s" % (stage.name, self.workdir))
            self.__run_stage(stage)
        self.state = State.ASSEMBLED

    def publish(self):
        """Move the final artifact to the destination path."""
        image = self._get_final_image()
        logging.info("Publishing %s to %s" % (image, self.destination))
        shutil.move(image, self.destination)
        self.state = State.DONE
        return self.destination

    def create(self):
        """Verify, reset, stage, unmount, package and publish an image.

        Returns the destination path. If anything fails, or the run is
        interrupted, the creator enters State.FAILED, cleanup() runs and the
        first exception is re-raised.

        """
        self.verify()
        try:
            self.reset()
            self.stage()
            self.unmount()
            self.package()
            return self.publish()
        except BaseException as e:
            self._fail(e)
            raise
        finally:
            self.cleanup()

    def _fail(self, e):
        if self.failure is None:
            self.failure = e
            self.failed_in = self.state
        logging.error("Build failed (%s, after %d stage(s)) : %s" %
                      (self.state, self.stages_done, e))
        self.state = State.FAILED

    def cleanup(self):
        """Unmounts everything under the working directory and releases it.

        Unmount and eviction failures are logged, not raised. The working
        directory is only removed if docleanup is set and nothing is
        mounted under it any more.

        Note, create() calls this method itself; callers driving the steps
        by hand should do e.g.:

          creator.verify()
          try:
              creator.reset()
              ...
          finally:
              creator.cleanup()

        SIGINT and SIGTERM are ignored until the unwind has finished.

        """
        handlers = _ignore_signals()
        try:
            try:
                failures = self._undo_bindmounts()
                if failures:
                    logging.warning("Could not unmount : %s" %
                                    ", ".join(failures))
                residual = self.tracker.residual()
            except (CreatorError, OSError) as e:
                logging.warning("Cleanup of %s failed : %s" % (self.workdir, e))
                residual = [self.workdir]

            if residual:
                logging.error("Mounts remain under %s : %s" %
                              (self.workdir, ", ".join(residual)))
            elif not self.docleanup:
                logging.warning("Skipping cleanup of temporary files")
            elif os.path.lexists(self.workdir):
                shutil.rmtree(self.workdir, ignore_errors = True)

            self.__unlock()
        finally:
            _restore_signals(handlers)

    #
    # Stage actions
    #
    def _bootstrap(self, instroot):
        self.provisioner.bootstrap(instroot)
        for d in ("/dev/pts", "/proc", "/sys", "/tmp"):
            makedirs(instroot + d)

    def _install(self, instroot):
        """Install the required, then the kickstart packages into instroot."""
        p = self.provisioner
        p.write_sources(instroot, kickstart.get_repos(self.ks, self.releasever))
        p.setup(instroot)
        try:
            p.install_packages(instroot, self._get_required_packages(),
                               set([UPDATE_INDEX_FIRST]))
            self._post_install_check(instroot)

            options = set()
            if kickstart.exclude_weakdeps(self.ks):
                options.add(INSTALL_NO_RECOMMENDS)
            excluded = kickstart.get_excluded(self.ks)
            for pkg in excluded:
                logging.info("excluding package: '%s'", pkg)
            packages = [pkg for pkg in kickstart.get_packages(self.ks)
                        if pkg not in excluded]
            p.install_packages(instroot,
                               packages + [pkg + "-" for pkg in excluded],
                               options)
        finally:
            p.close(instroot)

    def _configure(self, instroot):
        """Apply the kickstart system configuration."""
        ksh = self.ks.handler

        kickstart.LanguageConfig(instroot).apply(ksh.lang)
        kickstart.KeyboardConfig(instroot).apply(ksh.keyboard)
        kickstart.TimezoneConfig(instroot).apply(ksh.timezone)
        kickstart.RootPasswordConfig(instroot).apply(ksh.rootpw)
        kickstart.UserConfig(instroot).apply(ksh.user)
        kickstart.ServicesConfig(instroot).apply(ksh.services)

    def _copy_payloads(self, instroot):
        for (src, dest) in self.payloads:
            target = os.path.join(instroot, dest.lstrip("/"))
            logging.info("Copying %s to %s" % (src, target))
            if os.path.isdir(src):
                shutil.copytree(src, target, symlinks=True, dirs_exist_ok=True)
            else:
                makedirs(os.path.dirname(target))
                shutil.copy2(src, target)

    def _run_post_scripts(self, instroot):
        for s in kickstart.get_post_scripts(self.ks):
            env = self._get_post_scripts_env(s.inChroot)
            action = script_action(s.script, s.interp, s.inChroot, env)
            try:
                action(instroot)
            except (CreatorError, subprocess.CalledProcessError) as e:
                if s.errorOnFail:
                    raise CreatorError("%%post script failed : %s" % e)
                logging.warning("ignoring %%post failure : %s" % e)
