# SPDX-License-Identifier: MIT

"""Azure Pipelines logging commands.

The agent scans the job's standard output for `##vso[...]` lines, so these
are printed rather than logged.
"""

import logging
import sys

logger = logging.getLogger(__name__)


def set_pipeline_variable(name, value, stream=None):
    """Sets a pipeline variable usable by later steps of the job.

    :param name: The variable name
    :param value: The value to assign
    :param stream: Output stream, standard output by default
    """
    logger.info('Setting pipeline variable %s to %s', name, value)
    print('##vso[task.setvariable variable={}]{}'.format(name, value), file=stream or sys.stdout)
