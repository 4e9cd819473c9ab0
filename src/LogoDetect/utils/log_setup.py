#!/usr/bin/env python
# -*- coding: utf-8 -*-

import logging
import os
import sys
import appdirs
import colorlog
from datetime import datetime
from pathlib import Path


def get_log_directory():
    """Determine the appropriate log directory based on how the app is running"""
    if getattr(sys, 'frozen', False):
        # If running as packaged app
        log_dir = appdirs.user_log_dir(appname="LogoDetect", appauthor=False)
    else:
        # If running from source
        script_dir = os.path.dirname(os.path.abspath(__file__))
        root_dir = os.path.dirname(os.path.dirname(os.path.dirname(script_dir)))
        log_dir = os.path.join(root_dir, 'logs')

    # Add date subdirectory
    log_dir = os.path.join(log_dir, datetime.now().strftime('%Y-%m-%d'))
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError:
        # Installed into a read-only location, use the per-user log dir instead
        log_dir = os.path.join(appdirs.user_log_dir(appname="LogoDetect", appauthor=False),
                               datetime.now().strftime('%Y-%m-%d'))
        os.makedirs(log_dir, exist_ok=True)
    return log_dir


def setup_logger():
    # Assigns getLogger function from imported module, creates logger
    logger = logging.getLogger()
    # Sets 'lowest' log level
    logger.setLevel(logging.DEBUG)

    # Establishes path to 'logs' directory
    log_dir = get_log_directory()
    log_name = f"{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}_LogoDetect"
    log_path = os.path.join(log_dir, f"{log_name}.log")

    # Define log formats which will be used in 'formatter' for the 2 log handlers
    LOG_FORMAT = '%(asctime)s - %(levelname)s: %(message)s'
    STDOUT_FORMAT = '%(message)s'

    ## 2 log handlers, one for the log file 'file_handler', and one for the terminal output 'console_handler'
    file_handler = logging.FileHandler(log_path)
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)

    # define console_handler and set format for terminal output
    console_handler = colorlog.StreamHandler()
    console_formatter = colorlog.ColoredFormatter(
        '%(log_color)s' + STDOUT_FORMAT,
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'bold_red',
        }
    )
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    return logger

# Initialize logger once on module import
logger = setup_logger()


# Store reference to the current per-file handler so we can remove it later
_current_file_handler = None

def start_file_log(output_directory, video_id, log_level=logging.DEBUG):
    """
    Start capturing logs to a per-video log in the output directory.

    The handler is added next to the existing ones, so messages still reach
    the main log file and the console.

    Args:
        output_directory (str): Directory the cut list is written to
        video_id (str): The video identifier (used in log filename)
        log_level (int): Minimum log level to capture (default: DEBUG)

    Returns:
        str: Path to the created log file
    """
    global _current_file_handler

    # Remove any existing per-file handler first
    stop_file_log()

    Path(output_directory).mkdir(parents=True, exist_ok=True)
    log_path = os.path.join(output_directory, f"{video_id}_logodetect.log")

    file_handler = logging.FileHandler(log_path, mode='w', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s: %(message)s'))
    file_handler.setLevel(log_level)

    # Marker attribute so we can identify this handler later
    file_handler._is_per_file_handler = True

    logger.addHandler(file_handler)
    _current_file_handler = file_handler

    logger.info(f"=== Logo detection log for: {video_id} ===")
    logger.info(f"Processing started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    return log_path


def stop_file_log():
    """
    Stop capturing logs to the per-video log and close the handler.
    """
    global _current_file_handler

    if _current_file_handler is not None:
        logger.info(f"Processing completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=== End of logo detection log ===")

        logger.removeHandler(_current_file_handler)
        _current_file_handler.close()
        _current_file_handler = None

    # Also check for any orphaned per-file handlers
    for handler in logger.handlers[:]:
        if getattr(handler, '_is_per_file_handler', False):
            logger.removeHandler(handler)
            handler.close()


# Example logs (only execute if this file is run directly, not imported)
if __name__ == "__main__":
    logger.debug('A debug message')
    logger.info('An info message')
    logger.warning('Something is not right.')
    logger.error('A Major error has happened.')
    logger.critical('Fatal error. Cannot continue')
