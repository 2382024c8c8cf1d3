# SPDX-License-Identifier: MIT

"""Exceptions raised by the sync engine."""


class SyncError(Exception):
    """Base class of every error raised by upstreamsync."""


class ConfigError(SyncError):
    """The sync configuration or the command line options are unusable."""


class GitError(SyncError):
    """A git command could not be run or failed where failure is fatal.

    :param message: Human readable description
    :param command: The git command line, with credentials redacted
    :param status: The git exit status, or None if git never ran
    """

    def __init__(self, message, command=None, status=None):
        super().__init__(message)
        self.command = command
        self.status = status


class GitHubError(SyncError):
    """The GitHub REST or GraphQL API returned something unexpected."""

    def __init__(self, message, status=None, response_text=None):
        super().__init__(message)
        self.status = status
        self.response_text = response_text


class PRAlreadyExistsError(GitHubError):
    """GitHub refused to create a PR because one already exists."""


class WouldCreateBranchError(SyncError):
    """A target branch is missing and creating it is not allowed in a dry run."""


class PRSubmissionError(SyncError):
    """One or more PR submissions of a config entry failed.

    The git part of the entry succeeded, so `results` holds a commit for
    every branch.  `errors` maps the PR branch name to the exception.
    """

    def __init__(self, message, results=None, errors=None):
        super().__init__(message)
        self.results = results if results is not None else []
        self.errors = errors if errors is not None else {}
