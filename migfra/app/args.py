# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.
#
# See LICENSE for more details.
#
# Copyright: migfra contributors 2026

import argparse

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def init_arguments(argv=None):
    """
    Initialize the arguments from the command line.

    :param argv: Arguments to parse, sys.argv if None.
    :return: The populated namespace of arguments.
    :rtype: argparse.Namespace
    """
    parser = argparse.ArgumentParser(
        prog="migfra",
        description="Start, stop and migrate virtual machines on request.")
    parser.add_argument(
        "--config",
        action="store",
        default=None,
        help="Specify the config file [default: built-in defaults]",
    )
    parser.add_argument(
        "--host",
        action="store",
        default=None,
        help="Specify alternate MQTT broker host, overrides the config file",
    )
    parser.add_argument(
        "--port",
        action="store",
        default=None,
        type=int,
        help="Specify alternate MQTT broker port, overrides the config file",
    )
    parser.add_argument(
        "--log-level",
        action="store",
        default="INFO",
        type=str.upper,
        choices=LOG_LEVELS,
        help='Specify the log level [default: "INFO"]',
    )
    parser.add_argument("--pid-file", default=None,
                        help="Specify the file of pid.")
    return parser.parse_args(argv)
