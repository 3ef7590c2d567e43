#
# debug.py: Helper routines for debugging
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
#

import logging
import argparse
import sys

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class LoggingConfig(argparse.Action):
    """Class for handling logging setup."""

    def __init__(self, option_strings, dest, logger, stream, **kwargs):
        super(LoggingConfig, self).__init__(option_strings, dest, **kwargs)
        self.logger = logger
        self.stream = stream

    def __call__(self, parser, namespace, values, option_string=None):

        if self.dest == 'debug':
            if logging.DEBUG < self.logger.level:
                self.logger.setLevel(logging.DEBUG)
            values = True

        elif self.dest == 'verbose':
            if logging.INFO < self.logger.level:
                self.logger.setLevel(logging.INFO)
            values = True

        elif self.dest == 'quiet':
            self.logger.removeHandler(self.stream)
            values = True

        elif self.dest == 'logfile':
            try:
                logfile = logging.FileHandler(values, 'a')
            except IOError as e:
                raise argparse.ArgumentError(self, "Cannot open file '%s' : %s"
                                             % (values, e.strerror))
            logfile.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
            self.logger.addHandler(logfile)

        setattr(namespace, self.dest, values)


def setup_logging(parser = None):
    """Set up the root logger and add logging options.

    Set up the root logger so only warning/error messages are logged to stderr
    by default.

    Also, optionally, add --debug, --verbose, --quiet and --logfile command
    line options to the supplied argument parser, allowing the root logger
    configuration to be modified by the user.

    parser -- an argparse.ArgumentParser instance, or None

    Returns the stderr handler.

    """
    logger = logging.getLogger()

    logger.setLevel(logging.WARNING)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    logger.addHandler(stream)

    if parser is None:
        return stream

    group = parser.add_argument_group('Debugging options',
                             'These options control the output of logging '
                             'information during image creation.')

    group.add_argument('-d', '--debug', nargs=0,
                       action=LoggingConfig, logger=logger, stream=stream,
                       help='Output debugging information.\n ')

    group.add_argument('-v', '--verbose', nargs=0,
                       action=LoggingConfig, logger=logger, stream=stream,
                       help='Output verbose progress information.\n ')

    group.add_argument('-q', '--quiet', nargs=0,
                       action=LoggingConfig, logger=logger, stream=stream,
                       help='Suppress stdout.\n ')

    group.add_argument('--logfile', metavar='PATH',
                       action=LoggingConfig, logger=logger, stream=stream,
                       help='Save debug information to PATH.\n ')

    return stream
