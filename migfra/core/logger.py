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

import logging

from .data_dir import get_log_filename

LOG_FORMAT = "%(asctime)s %(name)s %(threadName)s %(levelname)-5.5s| %(message)s"


def init_logger(level=logging.INFO, log_file=None):
    """
    Initialize the daemon logger.

    Sets up the "migfra" logger with a StreamHandler (console) and a
    FileHandler (file).

    :param level: Level of both handlers, a logging level or its name.
    :param log_file: The log file, the one in the data directory if None.
    :return: The configured logger object.
    :rtype: logging.Logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger("migfra")
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.setLevel(level)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
    logger.addHandler(stream_handler)

    file_handler = logging.FileHandler(filename=log_file or get_log_filename())
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
    logger.addHandler(file_handler)

    return logger
