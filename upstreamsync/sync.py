# SPDX-License-Identifier: MIT

"""The upstream sync engine.

For every config entry, a fresh repository is created and all the involved
branches are fetched in one batch per remote.  Each upstream branch is then
merged into its target branch, or, for submodule entries, the submodule
pointer is moved to the upstream commit.  Changed branches are force pushed
in one batch to `dev/auto-sync/{target}` branches and a PR is submitted,
approved and set to auto-merge for each of them.  A PR branch of an open
PR whose last commit was authored by someone else is left alone.

Git failures abort the entry.  GitHub failures only affect their own
branch; the remaining branches are still submitted and the failures are
reported together at the end.
"""

import logging
import os
import tempfile
import time
from dataclasses import dataclass, field

import regex
import requests

from upstreamsync import github
from upstreamsync.auth import (AzDOPATAuther, GitHubPATAuther, GitHubSSHAuther, MultiAuther, NoAuther,
                               redact)
from upstreamsync.config import DEFAULT_CONFIG, ConfigEntry, load_config
from upstreamsync.errors import (ConfigError, GitError, GitHubError, PRAlreadyExistsError, PRSubmissionError,
                                 SyncError, WouldCreateBranchError)
from upstreamsync.gitcmd import GitRunner
from upstreamsync.refs import NEW_BRANCH_PURPOSE, MirrorRefSet, PRRefSet, SyncPRRefSet

logger = logging.getLogger(__name__)

GIT_AUTH_NONE = 'none'
GIT_AUTH_SSH = 'ssh'
GIT_AUTH_PAT = 'pat'
GIT_AUTH_OPTIONS = (GIT_AUTH_NONE, GIT_AUTH_SSH, GIT_AUTH_PAT)

# Relative to the working directory; every run gets a timestamped subdirectory
DEFAULT_TEMP_GIT_DIR = os.path.join('eng', 'artifacts', 'sync-upstream-temp-repo')

# Lines of the name-status diff shown in the log and the PR description
MAX_DIFF_LINES = 200

# Characters of the upstream commit message kept in submodule update commits
MAX_SNIPPET_LENGTH = 1000
SNIPPET_CUTOFF = '[...]'

VERSION_FILE = 'VERSION'
REVISION_FILE = 'MICROSOFT_REVISION'

PR_BODY = (
    "Hi! I'm a bot, and this is an automatically generated upstream sync PR. \U0001F503"
    "\n\nAfter submitting the PR, I will attempt to enable auto-merge in the \"merge commit\" configuration."
    "\n\nFor more information, visit [sync documentation in microsoft/go-infra]"
    "(https://github.com/microsoft/go-infra/tree/main/docs/automation/sync.md)."
)

PR_BODY_MERGE = (
    "\n\nThis PR merges `{}` into `{}`."
    "\n\nIf PR validation fails and you need to fix up the PR, make sure to use a merge commit, "
    "not a squash or rebase!"
)

PR_BODY_DIFF = (
    "\n\n<details><summary>Click on this text to view the file difference between this branch and "
    "upstream.</summary>\n\n```\n{}\n```\n\n</details>"
)


@dataclass
class SyncFlags:
    """Run options, built once from the command line.

    :param dry_run: Do not push for real and do not submit PRs
    :param initial_clone_dir: Clone this repository instead of starting empty
    :param github_user: The user submitting PRs
    :param github_pat: PAT of `github_user`
    :param github_pat_reviewer: PAT of the user approving PRs
    :param azdo_dnceng_pat: PAT for Azure DevOps dnceng git URLs
    :param sync_config: Path to the sync configuration file
    :param temp_git_dir: Root directory of the temporary repositories
    :param create_branches: Fork missing target branches from MainBranch
    :param git_auth: One of `none`, `ssh` or `pat`
    :param git_user_name: Committer name in the temporary repository, optional
    :param git_user_email: Committer email in the temporary repository, optional
    :param github_retries: Attempts per GitHub request on transport failures
    """

    dry_run: bool = False
    initial_clone_dir: str = ''
    github_user: str = ''
    github_pat: str = ''
    github_pat_reviewer: str = ''
    azdo_dnceng_pat: str = ''
    sync_config: str = DEFAULT_CONFIG
    temp_git_dir: str = DEFAULT_TEMP_GIT_DIR
    create_branches: bool = False
    git_auth: str = GIT_AUTH_NONE
    git_user_name: str = ''
    git_user_email: str = ''
    github_retries: int = github.DEFAULT_RETRIES

    def parse_auth(self):
        """Returns the auther matching `git_auth`.

        :raises ConfigError: On an unknown option or missing credentials
        """
        if self.git_auth == GIT_AUTH_NONE:
            return NoAuther()
        if self.git_auth == GIT_AUTH_SSH:
            return GitHubSSHAuther()
        if self.git_auth == GIT_AUTH_PAT:
            missing = []
            if not self.github_user:
                missing.append('git-auth pat is specified but github-user is not.')
            if not self.github_pat:
                missing.append('git-auth pat is specified but github-pat is not.')
            if missing:
                raise ConfigError('Missing command-line args: ' + ' '.join(missing))
            return MultiAuther([
                GitHubPATAuther(self.github_pat, self.github_user),
                AzDOPATAuther(self.azdo_dnceng_pat),
            ])
        raise ConfigError('git-auth value {!r} is not an accepted value.'.format(self.git_auth))

    def submitter_auth(self):
        return GitHubPATAuther(self.github_pat, self.github_user)

    def reviewer_auth(self):
        return GitHubPATAuther(self.github_pat_reviewer)

    def pr_skip_reason(self):
        """Returns why PRs can't be submitted, or an empty string if they can."""
        if self.dry_run:
            return 'Dry run'
        if not self.github_user:
            return 'github-user not provided'
        if not self.github_pat:
            return 'github-pat not provided'
        if not self.github_pat_reviewer:
            # Submitting without approval and auto-merge isn't useful
            return 'github-pat-reviewer not provided'
        return ''

    def read_config(self):
        return load_config(self.sync_config)

    def make_git_work_dir(self):
        """Creates a fresh timestamped directory under `temp_git_dir`.

        :returns: The path of the new directory
        """
        try:
            os.makedirs(self.temp_git_dir, exist_ok=True)
            d = tempfile.mkdtemp(prefix=time.strftime('%Y-%m-%d_%H-%M-%S_'), dir=self.temp_git_dir)
        except OSError as e:
            raise SyncError('Failed to make working directory for sync: {}'.format(e)) from e
        logger.info('Using working directory %s', d)
        return d


@dataclass
class SyncResult:
    """The outcome of syncing one branch.

    :param commit: The commit holding the synced state; either the commit
        pushed for the PR or the target commit found to be up to date
    :param pr: The github.PullRequest, or None if no PR was submitted
    """

    commit: str = ''
    pr: object = None


@dataclass
class EntryResult:
    entry: ConfigEntry
    results: list = field(default_factory=list)
    error: Exception = None

    @property
    def ok(self):
        return self.error is None


@dataclass
class ChangedBranch:
    refs: SyncPRRefSet
    result: SyncResult
    request: dict = None
    existing_pr: object = None
    skip_reason: str = ''


def create_commit_message_snippet(message, max_length=MAX_SNIPPET_LENGTH, cutoff=SNIPPET_CUTOFF):
    """Shortens a commit message to its first line, cut at `max_length`
    characters including the cutoff indicator.

    :param message: The full commit message
    :param max_length: Maximum length of the snippet
    :param cutoff: Text marking a cut snippet
    :returns: The snippet
    """
    message = regex.split(r'[\r\n]', message, maxsplit=1)[0]
    if len(message) > max_length:
        message = message[:max_length - len(cutoff) + 1] + cutoff
    return message


def truncate_diff(diff, max_lines=MAX_DIFF_LINES):
    """Keeps the first `max_lines` lines of a diff, noting the truncation."""
    lines = diff.splitlines()
    out = ''.join(line + '\n' for line in lines[:max_lines])
    if len(lines) > max_lines:
        out += 'Diff truncated: contains more than {} lines.\n'.format(max_lines)
    return out


def sync_branches(entry):
    """Builds the refsets of every auto-synced branch of the entry."""
    branches = []
    for upstream in entry.auto_sync_branches:
        target = entry.target_branch(upstream)
        if not target:
            raise ConfigError('No target match found for auto sync branch {!r}'.format(upstream))
        branches.append(SyncPRRefSet(
            name=target,
            upstream_name=upstream,
            commit=entry.source_branch_latest_commit.get(upstream, ''),
        ))
    return branches


def create_missing_branches(flags, runner, auther, entry, branches):
    """Pushes every missing target branch as a fork of MainBranch.

    :raises WouldCreateBranchError: In a dry run, once a branch is missing
    """
    if not entry.main_branch:
        raise ConfigError('The create-branches flag requires MainBranch to be configured, but it is not.')
    target = auther.insert_auth(entry.target)
    for b in branches:
        if runner.remote_branch_exists(target, b.name):
            continue
        logger.info('Target branch %s is missing, forking it from %s', b.name, entry.main_branch)
        main = PRRefSet(entry.main_branch, NEW_BRANCH_PURPOSE)
        runner.fetch(target, [main.base_branch_fetch_refspec()])
        runner.push(target, [b.fork_from_main_refspec(main.pr_branch())], dry_run=flags.dry_run)
        if flags.dry_run:
            raise WouldCreateBranchError(
                'Would have pushed new branch {} to the target repository, but this is a dry run. '
                'Cannot continue.'.format(b.name))


def merge_branch(runner, entry, b):
    """Merges the upstream branch into the checked out PR branch.

    :returns: A (title, body, commit message) tuple
    """
    r = runner.merge(b.upstream_local_sync_target())
    if not r.ok:
        logger.info('Merge exited with status %d.  This is expected if there were conflicts, '
                    'trying to resolve them next.', r.status)
    if entry.auto_resolve_target:
        runner.checkout_ours(entry.auto_resolve_target)
    title = 'Merge upstream `{}` into `{}`'.format(b.upstream_name, b.name)
    body = PR_BODY + PR_BODY_MERGE.format(b.upstream_name, b.name)
    message = 'Merge upstream branch "{}" into {}'.format(b.upstream_name, b.name)
    return title, body, message


def update_submodule(runner, entry, b):
    """Points the submodule of the checked out PR branch to the upstream
    commit and updates the version files next to it.

    :returns: A (title, body, commit message) tuple
    """
    try:
        commit = runner.rev_parse(b.upstream_local_sync_target())
    except GitError as e:
        raise GitError('Failed to find upstream sync target in local repo after fetching: {}'.format(e),
                       command=e.command, status=e.status) from e

    # A pinned commit is expected to be in both places already
    if entry.upstream_mirror and not b.commit:
        mirror_commit = runner.rev_parse(b.upstream_mirror_local_branch())
        if commit != mirror_commit:
            logger.warning('Upstream and upstream mirror commits do not match: %s != %s', commit, mirror_commit)
        commit = runner.merge_base(commit, mirror_commit)
        logger.info('Common commit of upstream and upstream mirror: %s', commit)

    if entry.go_version_file_content:
        upstream_version = runner.show_file(commit, VERSION_FILE)
        if upstream_version is None:
            logger.info("VERSION file doesn't exist in submodule.")
        content = ''
        if entry.go_version_file_content != upstream_version:
            content = entry.go_version_file_content
        runner.write_file(VERSION_FILE, content)

    if entry.go_microsoft_revision_file_content:
        content = ''
        # Revision 1 is the default and needs no file
        if entry.go_microsoft_revision_file_content != '1':
            content = entry.go_microsoft_revision_file_content
        runner.write_file(REVISION_FILE, content)

    runner.update_submodule_index(commit, entry.submodule_target)

    snippet = create_commit_message_snippet(runner.commit_message(commit))
    title = 'Update submodule to latest `{}` in `{}`'.format(b.upstream_name, b.name)
    message = 'Update submodule to latest {} ({}): {}'.format(b.upstream_name, commit[:8], snippet)
    return title, PR_BODY, message


def check_existing_pr(flags, client, runner, auther, entry, head, target, c):
    """Looks up the open PR of a changed branch before its PR branch is
    pushed.

    If the PR branch holds a commit by someone else, e.g. a fixup pushed to
    the open PR, the branch is marked to be skipped so it isn't overwritten.
    """
    c.existing_pr = client.find_existing_pr(c.request, head, target, c.refs.pr_branch(), flags.github_user,
                                            flags.submitter_auth())
    if c.existing_pr is None:
        return
    logger.info('Found existing PR #%d for %s', c.existing_pr.number, c.refs.pr_branch())
    remote_commit = runner.fetch_ref_commit(auther.insert_auth(entry.pr_branch_storage_repo()),
                                            'refs/heads/' + c.refs.pr_branch())
    mine = runner.author_email(c.result.commit)
    theirs = runner.author_email(remote_commit)
    if mine != theirs:
        c.skip_reason = ('PR already exists, but my author email ({}) is different from the author of the '
                         'remote commit ({}). Skipping PR submission.'.format(mine, theirs))


def submit_pr(flags, client, c, target):
    """Makes sure the PR exists, is approved and has auto-merge enabled.

    A PR that already existed is assumed to be approved from an earlier run
    and is not approved again.

    :returns: The github.PullRequest
    """
    submitter = flags.submitter_auth()
    try:
        pr = client.post_pr(target.owner_repo, c.request, submitter)
    except PRAlreadyExistsError:
        if c.existing_pr is None:
            raise GitHubError('Unable to submit PR because PR already exists, but no existing PR was found')
        pr = c.existing_pr
        logger.info('Using existing PR #%d', pr.number)
    else:
        if c.existing_pr is not None:
            raise GitHubError('Submitted PR #{}, but an existing PR #{} was found before pushing'.format(
                pr.number, c.existing_pr.number))
        logger.info('Submitted brand new PR: %s', pr.html_url)
        logger.info('Approving with reviewer account...')
        client.approve_pr(pr.node_id, flags.reviewer_auth())
    logger.info('Enabling auto-merge...')
    client.enable_auto_merge(pr.node_id, submitter)
    return pr


def make_branch_prs(flags, directory, entry):
    """Syncs every auto-synced branch of one config entry and submits PRs.

    :param flags: The SyncFlags of the run
    :param directory: Directory to create the temporary repository in
    :param entry: The ConfigEntry to sync
    :returns: A list of SyncResult, in AutoSyncBranches order
    :raises PRSubmissionError: If any PR submission failed
    """
    auther = flags.parse_auth()

    if flags.initial_clone_dir:
        runner = GitRunner.clone(flags.initial_clone_dir, directory)
    else:
        runner = GitRunner.init(directory)
    runner.configure_user(flags.git_user_name, flags.git_user_email)

    branches = sync_branches(entry)
    mirrors = [MirrorRefSet(p) for p in entry.auto_mirror_branches]

    if flags.create_branches:
        create_missing_branches(flags, runner, auther, entry, branches)

    upstream_refspecs = [b.upstream_fetch_refspec() for b in branches]
    upstream_refspecs.extend(m.upstream_mirror_fetch_refspec() for m in mirrors)
    runner.fetch(auther.insert_auth(entry.upstream), upstream_refspecs)
    runner.fetch(auther.insert_auth(entry.target), [b.base_branch_fetch_refspec() for b in branches])
    if entry.upstream_mirror:
        runner.fetch(auther.insert_auth(entry.upstream_mirror), [b.upstream_mirror_fetch_refspec() for b in branches])

    # Downstream builds rely on the mirror, so it's updated before anything else
    if entry.mirror_target:
        mirror_refspecs = [b.upstream_mirror_refspec() for b in branches]
        mirror_refspecs.extend(m.upstream_mirror_refspec() for m in mirrors)
        runner.push(auther.insert_auth(entry.mirror_target), mirror_refspecs, dry_run=flags.dry_run)

    target = github.parse_remote_url(entry.target)
    head = github.parse_remote_url(entry.pr_branch_storage_repo())

    results = []
    changed = []
    for b in branches:
        logger.info('Processing branch %s for entry targeting %s', b.name, redact(entry.target))
        runner.checkout(b.pr_branch())
        result = SyncResult()
        results.append(result)

        if entry.submodule_target:
            title, body, message = update_submodule(runner, entry, b)
        else:
            title, body, message = merge_branch(runner, entry, b)

        if not runner.has_staged_changes():
            logger.info('No changes to sync for %s, skipping.', b.name)
            # The up to date commit lets callers avoid racing other changes
            result.commit = runner.rev_parse('HEAD')
            continue
        logger.info('Detected changes in git stage, continuing to commit and submit PR.')

        runner.commit(message)
        result.commit = runner.rev_parse('HEAD')

        if not entry.submodule_target:
            diff = truncate_diff(runner.diff_name_status(b.upstream_local_branch(), b.pr_branch()))
            logger.info('Files changed from %s to %s:\n%s', b.upstream_name, b.name, diff)
            if diff:
                body += PR_BODY_DIFF.format(diff)

        changed.append(ChangedBranch(b, result, b.create_github_pr(head.owner, title, body)))

    if not changed:
        logger.info('Checked branches for changes to sync: none found.')
        return results

    client = github.GitHubClient(retries=flags.github_retries)
    errors = {}
    if not flags.pr_skip_reason():
        for c in changed:
            try:
                check_existing_pr(flags, client, runner, auther, entry, head, target, c)
            except (GitHubError, requests.RequestException) as e:
                logger.error('%s: failed to look up existing PR: %s', c.refs.pr_branch(), e)
                errors[c.refs.pr_branch()] = e

    # The merge commits are based on the target branch, not on the PR
    # branch, so the push can't be a fast-forward
    refspecs = [c.refs.pr_branch_refspec() for c in changed
                if not c.skip_reason and c.refs.pr_branch() not in errors]
    if refspecs:
        runner.push(auther.insert_auth(entry.pr_branch_storage_repo()), refspecs, force=True,
                    dry_run=flags.dry_run)

    for c in changed:
        if c.refs.pr_branch() in errors:
            continue
        flow = '{} -> {}'.format(c.refs.upstream_name, c.refs.pr_branch())
        reason = c.skip_reason or flags.pr_skip_reason()
        if reason:
            logger.info('%s: skipping submitting PR: %s', flow, reason)
            continue
        logger.info('%s: submitting PR...', flow)
        try:
            c.result.pr = submit_pr(flags, client, c, target)
        except (GitHubError, requests.RequestException) as e:
            logger.error('%s: failed to submit PR: %s', flow, e)
            errors[c.refs.pr_branch()] = e
            continue
        logger.info('%s: done.', flow)

    if errors:
        raise PRSubmissionError('Failed to submit {} of {} PRs.'.format(len(errors), len(changed)),
                                results=results, errors=errors)
    return results


def make_prs(flags):
    """Runs the sync for every entry of the configuration file.

    A failing entry is logged and the remaining entries still run.

    :param flags: The SyncFlags of the run
    :returns: A list of EntryResult, one per entry
    """
    entries = flags.read_config()
    if not entries:
        logger.warning('No entries found in config file: %s', flags.sync_config)
    run_dir = flags.make_git_work_dir()
    # Fail once here rather than once per entry
    flags.parse_auth()

    out = []
    for i, entry in enumerate(entries):
        num = '{}/{}'.format(i + 1, len(entries))
        logger.info('=== Beginning sync %s, from %s -> %s', num, redact(entry.upstream), redact(entry.target))
        logger.info('Repository for PR branch: %s', redact(entry.pr_branch_storage_repo()))
        try:
            results = make_branch_prs(flags, os.path.join(run_dir, str(i)), entry)
        except (SyncError, OSError) as e:
            logger.error('=== Failed sync %s: %s', num, e)
            out.append(EntryResult(entry, getattr(e, 'results', []), e))
            continue
        out.append(EntryResult(entry, results))
    return out
