# SPDX-License-Identifier: MIT

"""Command line entry points.

`upstream-sync` runs every entry of the sync configuration.  `releasego
sync` narrows the configuration to a single release branch and reports the
result to Azure Pipelines.
"""

import argparse
import logging
import os
import sys

import upstreamsync
from upstreamsync import azdo, github
from upstreamsync.config import DEFAULT_CONFIG, find_target, narrow_to_branch
from upstreamsync.errors import ConfigError, SyncError
from upstreamsync.goversion import GoVersion
from upstreamsync.sync import DEFAULT_TEMP_GIT_DIR, GIT_AUTH_NONE, GIT_AUTH_OPTIONS, SyncFlags, make_branch_prs, make_prs

logger = logging.getLogger(__name__)

SYNC_DESCRIPTION = '''
Sync runs a "merge from upstream" and submits it as a PR.  Commits are
fetched from an upstream repository and merged into the corresponding
branches of a target repository, as configured in the sync configuration
file.  For each entry of the configuration:

 1. Fetch each upstream branch to a local temporary repository.
 2. Fetch each corresponding target branch.
 3. Merge each upstream branch into its target branch, or update the
    submodule to the upstream commit.
 4. Force push each result to 'Head' (or 'Target') as
    'dev/auto-sync/{target branch}'.
 5. Create a PR in 'Target', approve it and enable auto-merge.  An
    existing PR is reused.

To run a subset of the entries, copy the configuration file and point at
the copy with '-c'.
'''

GIT_AUTH_HELP = '''The type of git auth to inject into URLs for fetch/push access:
none - leave GitHub URLs as they are;
ssh - change GitHub URLs to the SSH format;
pat - add github-user and github-pat to the URLs.'''


def _flag(parser, name, **kwargs):
    """Adds an option accepting both the `-name` and `--name` spellings."""
    parser.add_argument('-' + name, '--' + name, dest=name.replace('-', '_'), **kwargs)


def add_sync_arguments(parser):
    parser.add_argument('-n', '--dry-run', dest='dry_run', action='store_true',
                        help='enable dry run: do not push, do not submit PR')
    _flag(parser, 'github-user', default='', help='use this GitHub user to submit pull requests')
    _flag(parser, 'github-pat', default='', help='submit the PR with this GitHub PAT')
    _flag(parser, 'github-pat-reviewer', default='',
          help='approve the PR with this PAT; required if github-pat is specified')
    _flag(parser, 'azdo-dnceng-pat', default='',
          help='use this Azure DevOps PAT to authenticate to dnceng project HTTPS git URLs')
    parser.add_argument('-c', '--config', dest='sync_config', default=DEFAULT_CONFIG,
                        help='the sync configuration file to run (default: %(default)s)')
    _flag(parser, 'temp-git-dir', default=os.path.join(os.getcwd(), DEFAULT_TEMP_GIT_DIR),
          help='location to create the temporary git repository in; a timestamped subdirectory is created')
    _flag(parser, 'git-auth', default=GIT_AUTH_NONE, choices=GIT_AUTH_OPTIONS, help=GIT_AUTH_HELP)
    _flag(parser, 'initial-clone-dir', default='',
          help='clone this repository instead of starting from scratch, to reduce network use in development')
    _flag(parser, 'create-branches', action='store_true',
          help='push missing target branches to the target repository as forks of MainBranch')
    _flag(parser, 'git-user-name', default='', help='committer name to use in the temporary repository')
    _flag(parser, 'git-user-email', default='', help='committer email to use in the temporary repository')
    _flag(parser, 'github-retries', type=int, default=github.DEFAULT_RETRIES,
          help='attempts per GitHub request on connection failures (default: %(default)s)')
    parser.add_argument('--loglevel', default='INFO', help='logging level (default: %(default)s)')


def flags_from_args(args):
    return SyncFlags(
        dry_run=args.dry_run,
        initial_clone_dir=args.initial_clone_dir,
        github_user=args.github_user,
        github_pat=args.github_pat,
        github_pat_reviewer=args.github_pat_reviewer,
        azdo_dnceng_pat=args.azdo_dnceng_pat,
        sync_config=args.sync_config,
        temp_git_dir=args.temp_git_dir,
        create_branches=args.create_branches,
        git_auth=args.git_auth,
        git_user_name=args.git_user_name,
        git_user_email=args.git_user_email,
        github_retries=args.github_retries,
    )


def setup_logging(level):
    logging.basicConfig(format='%(asctime)s:%(levelname)s:%(message)s', level=logging.INFO)
    upstreamsync.loglevel(level.upper())


def main_sync(argv=None):
    """Entry point of `upstream-sync`.

    :param argv: Command line arguments, sys.argv by default
    :returns: The process exit code
    """
    parser = argparse.ArgumentParser(prog='upstream-sync', description=SYNC_DESCRIPTION, allow_abbrev=False,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    add_sync_arguments(parser)
    args = parser.parse_args(argv)
    setup_logging(args.loglevel)

    try:
        entries = make_prs(flags_from_args(args))
    except SyncError as e:
        logger.critical('%s', e)
        return 1
    failed = [r for r in entries if not r.ok]
    if failed:
        logger.error('Completed with errors: %d of %d entries failed.', len(failed), len(entries))
        return 1
    logger.info('Completed successfully.')
    return 0


def releasego_sync(args):
    """Ensures the repository has a commit building the given release, or
    an open PR updating the release branch to it.
    """
    flags = flags_from_args(args)
    v = GoVersion.parse(args.version)
    upstream = v.release_branch()

    entries = flags.read_config()
    entry, target = find_target(entries, args.repo, upstream)
    if entry is None:
        raise ConfigError('Unable to find config entry matching {!r} for version {!r}'.format(upstream, v.full()))
    entry = narrow_to_branch(entry, upstream, target, args.commit)

    results = make_branch_prs(flags, flags.make_git_work_dir(), entry)
    if len(results) != 1:
        raise SyncError('Expected one result, got {}: {}'.format(len(results), results))
    r = results[0]
    if not r.commit:
        raise SyncError('Commit string empty in sync result {}'.format(r))

    if r.pr is None:
        logger.info('No PR created for commit: %s', r.commit)
        pr_number, up_to_date_commit = 'nil', r.commit
    else:
        logger.info('Created PR: %d', r.pr.number)
        pr_number, up_to_date_commit = str(r.pr.number), 'nil'
    if args.set_azdo_variable_pr_number:
        azdo.set_pipeline_variable(args.set_azdo_variable_pr_number, pr_number)
    if args.set_azdo_variable_up_to_date_commit:
        azdo.set_pipeline_variable(args.set_azdo_variable_up_to_date_commit, up_to_date_commit)


def main_releasego(argv=None):
    """Entry point of `releasego`.

    :param argv: Command line arguments, sys.argv by default
    :returns: The process exit code
    """
    parser = argparse.ArgumentParser(prog='releasego', description='Release automation commands.',
                                     allow_abbrev=False)
    subparsers = parser.add_subparsers(dest='command', metavar='command')
    subparsers.required = True
    sync = subparsers.add_parser(
        'sync', help='sync the right branch to the specified release', allow_abbrev=False,
        description='Ensures the repository either has a commit that builds the specified upstream '
                    'release, or an open PR that updates the branch to the correct commit.  The result '
                    "is reported by setting the AzDO variables named by the '-set-*' options.")
    add_sync_arguments(sync)
    _flag(sync, 'repo', required=True, help='the target repository, in owner/name form')
    _flag(sync, 'version', required=True,
          help='a full Go version number (major.minor.patch-revision[-suffix]) selecting the entry and branch')
    _flag(sync, 'commit', default='', help='the upstream commit to update to')
    _flag(sync, 'set-azdo-variable-pr-number', default='',
          help='an AzDO variable to set to the sync PR number, or nil if no PR is created')
    _flag(sync, 'set-azdo-variable-up-to-date-commit', default='',
          help='an AzDO variable to set to nil if a PR is created, otherwise to the up to date commit')
    sync.set_defaults(handler=releasego_sync)

    args = parser.parse_args(argv)
    setup_logging(args.loglevel)
    try:
        args.handler(args)
    except (SyncError, OSError) as e:
        logger.critical('%s', e)
        return 1
    return 0


def run_sync():
    sys.exit(main_sync())


def run_releasego():
    sys.exit(main_releasego())
