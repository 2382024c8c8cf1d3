# SPDX-License-Identifier: MIT
#
# upstreamsync
# Sync tool for keeping fork repositories up to date with upstream.
#
# This package implements the upstream branch sync for the fork
# repositories.  It implements the following mechanisms:
#
#  * Fetches the configured upstream and target branches in batches.
#
#  * Merges upstream branches into the corresponding fork branches, or
#    updates a submodule pointer to the latest upstream commit.
#
#  * Pushes the result to a dev/auto-sync/ branch and makes sure a single
#    approved, auto-merging GitHub pull request exists for it.
#

import logging

__version__ = '0.1.0'

# Package logger; every module logs through a child of this one
logger = logging.getLogger(__name__)


def loglevel(val=None):
    """Gets or, optionally, sets the logging level of the package.
    Standard numeric levels and level names are accepted.

    :param val: The logging level to use, optional
    :returns: The current logging level
    """
    if val is not None:
        try:
            logger.setLevel(val)
        except (TypeError, ValueError):
            logger.warning('Invalid log level passed to upstreamsync logger: %s', val)
    return logger.getEffectiveLevel()
