#
# livecreate : Support for creating live system images
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

from livecreate.live import *
from livecreate.creator import *
from livecreate.kickstart import *
from livecreate.fs import *
from livecreate.debug import *

"""A set of classes for building bootable live ISO images.

The following image creators are available:
  - ImageCreator - bootstraps and installs to a directory tree
  - LiveImageCreator - installs to a bootable hybrid BIOS and EFI ISO

Also exported are:
  - CreatorError - all exceptions thrown are of this type
  - FSLABEL_MAXLEN - the length to which LiveImageCreator.fslabel is truncated
  - read_kickstart() - a utility function for kickstart parsing
  - build_name() - a utility to construct an image name
  - setup_logging() - adds the logging options to an argument parser

A build goes through the states in creator.State. Every mount layered onto
the working directory is recorded by a MountTracker and is unwound, in
reverse order, however the build ends.

Each of the creator classes are designed to be subclassable. The
subclassing API consists of:

  1) Attributes available to subclasses, e.g. ImageCreator._instroot

  2) Hooks - methods which may be overridden by subclasses, e.g.
     ImageCreator._get_stages()

  3) Helpers - methods which may be used by subclasses in order to implement
     hooks, e.g. ImageCreator._do_bindmounts()

Overriding public methods (e.g. ImageCreator.package()) or subclassing helpers
is not supported and is not guaranteed to continue working as expected in the
future.

"""

__all__ = (
    'CreatorError',
    'ImageCreator',
    'LiveImageCreator',
    'State',
    'FSLABEL_MAXLEN',
    'DEFAULT_MIRROR',
    'read_kickstart',
    'build_name',
    'get_mirror',
    'setup_logging',
)
