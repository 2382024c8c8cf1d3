# SPDX-License-Identifier: MIT

"""Git operations on the temporary sync repository.

All commands run synchronously in the repository working directory through
GitPython.  Some git commands report their result through a non-zero exit
code, e.g. `git merge` on conflicts or `git diff --quiet` when there are
changes.  Those are returned as a CommandResult by run_status() instead of
being raised; everything else is a GitError.
"""

import logging
import os
from collections import namedtuple

import git

from upstreamsync.auth import redact
from upstreamsync.errors import GitError

logger = logging.getLogger(__name__)

# Tree entry mode of a submodule (gitlink)
SUBMODULE_MODE = '160000'

# ls-remote --exit-code exits with this status when no matching refs exist
LS_REMOTE_NO_MATCH = 2


class CommandResult(namedtuple('CommandResult', ['status', 'stdout', 'stderr'])):
    """Outcome of a git command whose exit code carries meaning."""

    __slots__ = ()

    @property
    def ok(self):
        return self.status == 0


class GitRunner:
    """Runs git commands in one repository working directory.

    :param directory: Path to an existing repository
    """

    def __init__(self, directory):
        self.directory = directory
        try:
            self.repo = git.Repo(directory)
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
            raise GitError('Not a git repository: {}'.format(directory)) from e

    @classmethod
    def init(cls, directory):
        """Creates a fresh repository in `directory`."""
        logger.info('Initializing git repository in %s', directory)
        try:
            git.Repo.init(directory, mkdir=True)
        except git.exc.GitError as e:
            raise GitError('Failed to initialize git repository in {}: {}'.format(directory, e)) from e
        return cls(directory)

    @classmethod
    def clone(cls, source, directory):
        """Creates the repository in `directory` as a clone of `source`.
        Used to avoid downloading everything from scratch in development.
        """
        logger.info('Cloning %s to %s', redact(source), directory)
        try:
            git.Repo.clone_from(source, directory)
        except git.exc.GitError as e:
            raise GitError('Failed to clone {}: {}'.format(redact(source), e)) from e
        return cls(directory)

    def run_status(self, *args):
        """Runs `git <args>` and returns its result, whatever the exit code.

        :param args: The git command and its arguments
        :returns: A CommandResult
        """
        cmdline = redact(' '.join(('git',) + args))
        logger.info('Running command: %s', cmdline)
        try:
            status, stdout, stderr = getattr(self.repo.git, args[0])(
                *args[1:], with_extended_output=True, with_exceptions=False)
        except git.exc.GitCommandNotFound as e:
            raise GitError('Unable to run git: {}'.format(e), command=cmdline) from e
        except OSError as e:
            raise GitError('Unable to run {}: {}'.format(cmdline, e), command=cmdline) from e
        if stdout:
            logger.info('%s', redact(stdout))
        if stderr:
            logger.info('%s', redact(stderr))
        return CommandResult(status, stdout, stderr)

    def run(self, *args):
        """Runs `git <args>`; any non-zero exit code is a GitError.

        :param args: The git command and its arguments
        :returns: The command's standard output
        """
        r = self.run_status(*args)
        if not r.ok:
            cmdline = redact(' '.join(('git',) + args))
            raise GitError('Command failed with exit status {}: {}'.format(r.status, cmdline),
                           command=cmdline, status=r.status)
        return r.stdout

    def configure_user(self, name, email):
        if name:
            self.run('config', 'user.name', name)
        if email:
            self.run('config', 'user.email', email)

    def fetch(self, remote, refspecs):
        self.run('fetch', '--no-tags', remote, *refspecs)

    def fetch_ref_commit(self, remote, ref):
        """Fetches a single ref without storing it locally.

        :returns: The commit the ref points to on the remote
        """
        self.run('fetch', '--no-tags', remote, ref)
        return self.rev_parse('FETCH_HEAD')

    def push(self, remote, refspecs, force=False, dry_run=False):
        """Pushes the refspecs in one batch.  A dry run still validates the
        refspecs against the remote.
        """
        args = ['push']
        if force:
            args.append('--force')
        args.append(remote)
        args.extend(refspecs)
        if dry_run:
            args.append('-n')
        self.run(*args)

    def checkout(self, ref):
        self.run('checkout', ref)

    def merge(self, target):
        """Merges `target` without committing.

        A non-zero exit usually means conflicts, but git does not tell a
        conflict apart from other merge failures; the caller decides.

        :returns: The CommandResult of the merge
        """
        return self.run_status('merge', '--no-ff', '--no-commit', target)

    def checkout_ours(self, paths):
        """Resolves `paths` to their HEAD version.  --no-overlay also removes
        files the merge added under those paths.
        """
        self.run('checkout', '--no-overlay', '--ours', 'HEAD', '--', *paths)

    def has_staged_changes(self):
        return not self.run_status('diff', '--cached', '--quiet').ok

    def commit(self, message):
        # Fails on unmerged files, which keeps a broken merge from being pushed
        self.run('commit', '-m', message)

    def rev_parse(self, rev):
        return self.run('rev-parse', rev).strip()

    def merge_base(self, a, b):
        return self.run('merge-base', a, b).strip()

    def commit_message(self, rev):
        return self.run('log', '--format=%B', '-n', '1', rev).strip()

    def author_email(self, rev):
        return self.run('show', '-s', '--format=%ae', rev).strip()

    def diff_name_status(self, a, b):
        return self.run('diff', '--name-status', a, b)

    def show_file(self, rev, path):
        """Returns the stripped content of `path` at `rev`, or None if the
        file does not exist there.
        """
        r = self.run_status('show', '{}:{}'.format(rev, path))
        if not r.ok:
            return None
        return r.stdout.strip()

    def update_submodule_index(self, commit, path):
        """Points the submodule at `path` to `commit` directly in the index,
        without cloning the submodule.
        """
        self.run('update-index', '--cacheinfo', '{},{},{}'.format(SUBMODULE_MODE, commit, path))

    def remote_branch_exists(self, remote, branch):
        r = self.run_status('ls-remote', '--exit-code', '--heads', remote, 'refs/heads/' + branch)
        if r.ok:
            return True
        if r.status == LS_REMOTE_NO_MATCH:
            return False
        raise GitError('Failed to check {} for branch {}, exit status {}'.format(redact(remote), branch, r.status),
                       status=r.status)

    def write_file(self, path, content):
        """Sets the content of a file relative to the working directory and
        stages it.  Empty content removes the file if it exists.
        """
        logger.info('Setting %s content: %r', path, content)
        if not content:
            self.run('rm', '--ignore-unmatch', '--', path)
            return
        with open(os.path.join(self.directory, path), 'w') as f:
            f.write(content)
        self.run('add', '--', path)
