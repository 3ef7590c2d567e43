#
# cli.py : livecd-creator command line interface
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
import sys
import signal
import argparse
import logging

import livecreate
from livecreate.provision import AptProvisioner, DEFAULT_COMPONENTS

class Usage(Exception):
    def __init__(self, msg = None, no_error = False):
        Exception.__init__(self, msg, no_error)

def parse_payload(value):
    if ":" not in value:
        raise argparse.ArgumentTypeError("'%s' is not of the form SRC:DEST"
                                         % value)
    src, dest = value.split(":", 1)
    if not src or not dest.startswith("/"):
        raise argparse.ArgumentTypeError("'%s' is not of the form SRC:DEST "
                                         "with an absolute DEST" % value)
    return (src, dest)

def parse_options(args):
    parser = argparse.ArgumentParser(
        prog="livecd-creator",
        description="Build a bootable live ISO from a kickstart file.")

    imgopt = parser.add_argument_group("Image options",
                                       "These options define the created "
                                       "image.")
    imgopt.add_argument("-c", "--config", dest="kscfg", required=True,
                        help="Path or URL to kickstart config file")
    imgopt.add_argument("-o", "--output", dest="destination",
                        help="Path of the ISO to create; defaults to "
                             "<name>.iso in the current directory")
    imgopt.add_argument("-n", "--name", dest="name",
                        help="Name of the image; defaults to one built from "
                             "the kickstart file name")
    imgopt.add_argument("-f", "--fslabel", dest="fslabel",
                        help="ISO volume id, truncated to %d characters"
                             % livecreate.FSLABEL_MAXLEN)
    imgopt.add_argument("--title", dest="title", default="Live CD",
                        help="Title shown in the boot menus")
    imgopt.add_argument("--releasever", dest="releasever", required=True,
                        help="Release to bootstrap, e.g. jammy")
    imgopt.add_argument("--arch", dest="arch", default="amd64",
                        help="Architecture to bootstrap (default: amd64)")
    imgopt.add_argument("--components", dest="components",
                        default=DEFAULT_COMPONENTS,
                        help="Archive components for the apt sources")
    imgopt.add_argument("--foreign-arch", dest="foreign_arches",
                        action="append", default=[],
                        help="Extra dpkg architecture, e.g. i386; may be "
                             "given more than once")
    imgopt.add_argument("--payload", dest="payloads", type=parse_payload,
                        action="append", default=[], metavar="SRC:DEST",
                        help="Copy SRC to DEST inside the image; may be given "
                             "more than once")
    imgopt.add_argument("--compression-type", dest="compress_type",
                        default="gzip",
                        help="mksquashfs compressor (default: gzip)")
    imgopt.add_argument("--min-rootfs-size", dest="min_rootfs_size", type=int,
                        default=100000000,
                        help="Smallest squashfs accepted, in bytes")
    imgopt.add_argument("--install-retries", dest="install_retries", type=int,
                        default=0,
                        help="How often to retry a failed package installation")

    sysopt = parser.add_argument_group("System directory options",
                                       "These options define directories used "
                                       "on your system for creating the live "
                                       "image.")
    sysopt.add_argument("-t", "--tmpdir", "--workdir", dest="workdir",
                        default="/var/tmp/livecreate",
                        help="Working directory; it is wiped at the start of "
                             "each run (default: /var/tmp/livecreate)")
    sysopt.add_argument("--host-marker", dest="host_marker",
                        help="Refuse to run unless /proc/version contains "
                             "this string, e.g. microsoft")
    sysopt.add_argument("--nocleanup", dest="nocleanup", action="store_true",
                        help="Skip cleanup of the working directory")

    livecreate.setup_logging(parser)

    options = parser.parse_args(args)

    if options.install_retries < 0:
        raise Usage("--install-retries must not be negative")
    if options.min_rootfs_size < 0:
        raise Usage("--min-rootfs-size must not be negative")

    return options

def sigterm_handler(signum, frame):
    raise KeyboardInterrupt()

def main(argv = None):
    try:
        options = parse_options(argv)
    except Usage as e:
        msg, no_error = e.args
        if no_error:
            out = sys.stdout
            ret = 0
        else:
            out = sys.stderr
            ret = 2
        if msg:
            print(msg, file=out)
        return ret

    try:
        ks = livecreate.read_kickstart(options.kscfg)
    except livecreate.CreatorError as e:
        logging.error("Error creating Live CD : %s" % e)
        return 1

    name = options.name or livecreate.build_name(options.kscfg, "livecd-")
    destination = os.path.abspath(options.destination or name + ".iso")

    signal.signal(signal.SIGTERM, sigterm_handler)

    try:
        provisioner = AptProvisioner(options.releasever,
                                     livecreate.get_mirror(
                                         ks, livecreate.DEFAULT_MIRROR),
                                     arch=options.arch,
                                     components=options.components,
                                     foreign_arches=options.foreign_arches)
        creator = livecreate.LiveImageCreator(
            ks, name, options.workdir, destination,
            fslabel=options.fslabel,
            title=options.title,
            releasever=options.releasever,
            arch=options.arch,
            provisioner=provisioner,
            payloads=options.payloads,
            host_marker=options.host_marker,
            docleanup=not options.nocleanup)
        creator.compress_type = options.compress_type
        creator.min_rootfs_size = options.min_rootfs_size
        creator.install_retries = options.install_retries

        creator.create()
    except livecreate.CreatorError as e:
        logging.error("Error creating Live CD : %s" % e)
        return 1
    except KeyboardInterrupt:
        logging.error("Interrupted, the build was cancelled")
        return 130

    logging.info("Live CD written to %s" % destination)
    return 0

if __name__ == "__main__":
    sys.exit(main())
