#
# util.py : Various utility methods
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
import logging
import io
from livecreate.errors import *

def call(*popenargs, **kwargs):
    """
        Calls subprocess.Popen() with the provided arguments.  All stdout and
        stderr output is sent to logging.debug().  The return value is the exit
        code of the command, or 127 if the command could not be found.
    """
    try:
        p = subprocess.Popen(*popenargs, stdout=subprocess.PIPE,
                             stderr=subprocess.STDOUT, **kwargs)
    except OSError as e:
        logging.debug("Failed executing %s : %s", popenargs, e)
        return 127
    fp = io.open(p.stdout.fileno(), mode="r", encoding="utf-8",
                 errors="replace", closefd=False)
    stdout = fp.read().splitlines(keepends=False)
    fp.close()
    p.stdout.close()
    rc = p.wait()

    # Log output using logging module
    for buf in stdout:
        logging.debug("%s", buf)

    return rc

def rcall(args, stdin='', raise_err=True, cwd=None, env=None, preexec_fn=None):
    """Return stdout, stderr, & returncode from a subprocess call."""

    environ = None
    if env is not None:
        environ = os.environ.copy()
        environ.update(env)
    try:
        p = subprocess.Popen(args, stdin=subprocess.PIPE, cwd=cwd, env=environ,
                             stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                             preexec_fn=preexec_fn)
        out, err = p.communicate(stdin.encode('utf-8'))
    except OSError as e:
        if raise_err:
            raise CreatorError('Failed executing:\n%s\nerror: %s' % (args, e))
        return '', 'Failed executing:\n%s\nerror: %s' % (args, e), 127

    out = out.decode('utf-8', 'replace')
    err = err.decode('utf-8', 'replace')
    if p.returncode != 0 and raise_err:
        raise CreatorError('Error in call:\n%s\nenviron: %s\n'
                           'stdout: %s\nstderr: %s\nreturncode: %s' %
                           (args, env, out, err, p.returncode))
    return out, err, p.returncode
