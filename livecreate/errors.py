#
# errors.py : exception definitions
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

class CreatorError(Exception):
    """An exception base class for all livecreate errors."""
    def __init__(self, message):
        Exception.__init__(self, message)

class KickstartError(CreatorError):
    pass
class PreconditionError(CreatorError):
    pass
class MountError(CreatorError):
    pass
class ResidualMountError(MountError):
    pass
class SquashfsError(CreatorError):
    pass

class StageError(CreatorError):
    """A pipeline stage failed; carries the stage name and the cause."""
    def __init__(self, stage, cause):
        CreatorError.__init__(self, "Stage '%s' failed : %s" % (stage, cause))
        self.stage = stage
        self.cause = cause

class ArtifactSizeError(StageError):
    """A produced artifact is too small to be a complete build."""
    def __init__(self, stage, path, size, minimum):
        StageError.__init__(self, stage,
                            "%s is suspiciously small (%d bytes, minimum %d)"
                            % (path, size, minimum))
        self.path = path
        self.size = size
        self.minimum = minimum
