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

import os

BASE_DIR = os.path.dirname(os.path.dirname(__file__))


def get_root_dir():
    return BASE_DIR


def get_data_dir():
    """
    :return: ``$MIGFRA_DATA_DIR`` if set, the ``data`` directory of the
             package otherwise.
    """
    return os.environ.get("MIGFRA_DATA_DIR",
                          os.path.join(get_root_dir(), "data"))


def get_log_dir():
    return os.path.join(get_data_dir(), "log")


def get_log_filename():
    return os.path.join(get_log_dir(), "migfra.log")


if __name__ == "__main__":
    print("base dir:         " + get_root_dir())
    print("data dir:         " + get_data_dir())
    print("log dir:          " + get_log_dir())
