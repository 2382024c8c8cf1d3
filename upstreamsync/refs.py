# SPDX-License-Identifier: MIT

"""Branch naming and refspec calculation for sync PR branches.

Everything here is a pure function of the branch names involved.  The
refspecs never carry a `refs/heads/` prefix in their inputs.
"""

from dataclasses import dataclass

# Purpose used in the PR branch name of regular sync PRs
SYNC_PURPOSE = 'auto-sync'

# Purpose used for the temporary branch that forks a new target branch
NEW_BRANCH_PURPOSE = 'auto-sync-new-branch'


def create_refspec(source, dest):
    """Makes a refspec that fetches or pushes the `source` branch to the
    `dest` branch.

    :param source: Source branch name, without `refs/heads/`
    :param dest: Destination branch name, without `refs/heads/`
    :returns: The refspec string
    """
    return 'refs/heads/{}:refs/heads/{}'.format(source, dest)


@dataclass(frozen=True)
class PRRefSet:
    """An automatic PR branch.

    :param name: The base branch the PR updates
    :param purpose: Purpose of the PR, used in the `dev/{purpose}/{name}` branch name
    """

    name: str
    purpose: str = SYNC_PURPOSE

    def pr_branch(self):
        """The head branch of the PR, without `refs/heads/`."""
        return 'dev/' + self.purpose + '/' + self.name

    def base_branch_fetch_refspec(self):
        """Fetches the PR base branch into a fresh PR head branch."""
        return create_refspec(self.name, self.pr_branch())

    def pr_branch_refspec(self):
        """Syncs the PR head branch between two repositories."""
        return create_refspec(self.pr_branch(), self.pr_branch())

    def create_github_pr(self, head_owner, title, body):
        """Creates the GitHub PR creation payload for this branch.

        :param head_owner: Owner of the repository storing the PR branch
        :param title: PR title
        :param body: PR description
        :returns: The payload dictionary
        """
        return {
            'head': head_owner + ':' + self.pr_branch(),
            'base': self.name,
            'title': title,
            'body': body,
            'maintainer_can_modify': True,
            'draft': False,
        }


@dataclass(frozen=True)
class SyncPRRefSet(PRRefSet):
    """A PR branch that syncs a target branch from an upstream branch.

    `commit` pins the sync to a specific upstream commit; empty means the
    tip of the upstream branch.  The pinned commit is expected to already be
    part of the upstream branch.
    """

    upstream_name: str = ''
    commit: str = ''

    def upstream_local_branch(self):
        return 'fetched-upstream/' + self.upstream_name

    def upstream_local_sync_target(self):
        """The commit or local branch to sync to."""
        if not self.commit:
            return self.upstream_local_branch()
        return self.commit

    def upstream_mirror_local_branch(self):
        return 'fetched-upstream-mirror/' + self.upstream_name

    def upstream_fetch_refspec(self):
        return create_refspec(self.upstream_name, self.upstream_local_branch())

    def upstream_mirror_fetch_refspec(self):
        return create_refspec(self.upstream_name, self.upstream_mirror_local_branch())

    def upstream_mirror_refspec(self):
        """Pushes the fetched upstream branch to the same name in a mirror."""
        return create_refspec(self.upstream_local_branch(), self.upstream_name)

    def fork_from_main_refspec(self, main_branch):
        """Pushes `main_branch` as the (new) target branch."""
        return create_refspec(main_branch, self.name)


@dataclass(frozen=True)
class MirrorRefSet:
    """A pure mirroring operation for every upstream branch matching a
    refspec pattern, e.g. `release-branch.*`.
    """

    upstream_pattern: str

    def upstream_mirror_local_branch_pattern(self):
        return 'fetched-upstream-mirror-pattern/' + self.upstream_pattern

    def upstream_mirror_fetch_refspec(self):
        return create_refspec(self.upstream_pattern, self.upstream_mirror_local_branch_pattern())

    def upstream_mirror_refspec(self):
        return create_refspec(self.upstream_mirror_local_branch_pattern(), self.upstream_pattern)
