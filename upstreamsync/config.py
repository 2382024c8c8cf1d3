# SPDX-License-Identifier: MIT

"""Sync configuration file handling.

The configuration file is a JSON list of entries, each one describing a
single upstream -> fork sync.  A YAML file holding the same list is accepted
as well.  Entry keys keep the names used by the existing configuration files,
e.g. `Upstream`, `BranchMap` or `AutoSyncBranches`.
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field

import regex
import yaml

from upstreamsync.errors import ConfigError

logger = logging.getLogger(__name__)

# Default location of the sync configuration, relative to the working directory
DEFAULT_CONFIG = os.path.join('eng', 'sync-config.json')

# JSON key -> ConfigEntry attribute
FIELDS = {
    'Upstream': 'upstream',
    'UpstreamMirror': 'upstream_mirror',
    'Target': 'target',
    'Head': 'head',
    'MirrorTarget': 'mirror_target',
    'BranchMap': 'branch_map',
    'AutoSyncBranches': 'auto_sync_branches',
    'AutoMirrorBranches': 'auto_mirror_branches',
    'MainBranch': 'main_branch',
    'SourceBranchLatestCommit': 'source_branch_latest_commit',
    'AutoResolveTarget': 'auto_resolve_target',
    'SubmoduleTarget': 'submodule_target',
    'GoVersionFileContent': 'go_version_file_content',
    'GoMicrosoftRevisionFileContent': 'go_microsoft_revision_file_content',
}

MAPPING_FIELDS = ('BranchMap', 'SourceBranchLatestCommit')
LIST_FIELDS = ('AutoSyncBranches', 'AutoMirrorBranches', 'AutoResolveTarget')
REQUIRED_FIELDS = ('Upstream', 'Target')


def _glob_regex(pattern):
    """Translates a branch glob into a regex.

    `*` and `?` never match `/`, so `*` only covers a single path segment.
    `[...]` is a character class, negated by a leading `^`, and a backslash
    escapes the next character.

    :raises ConfigError: On an unterminated or empty character class
    """
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == '*':
            out.append('[^/]*')
        elif c == '?':
            out.append('[^/]')
        elif c == '\\' and i + 1 < len(pattern):
            i += 1
            out.append(regex.escape(pattern[i]))
        elif c == '[':
            j = i + 1
            negate = j < len(pattern) and pattern[j] == '^'
            if negate:
                j += 1
            chars = []
            while j < len(pattern) and pattern[j] != ']':
                if pattern[j] == '\\' and j + 1 < len(pattern):
                    j += 1
                    chars.append(regex.escape(pattern[j]))
                elif pattern[j] == '-':
                    chars.append('-')
                else:
                    chars.append(regex.escape(pattern[j]))
                j += 1
            if j >= len(pattern) or not chars:
                raise ConfigError('Malformed BranchMap pattern: {}'.format(pattern))
            out.append('[' + ('^' if negate else '') + ''.join(chars) + ']')
            i = j
        else:
            out.append(regex.escape(c))
        i += 1
    return ''.join(out)


@dataclass
class ConfigEntry:
    """One sync task.

    :param upstream: The upstream repository to take updates from
    :param upstream_mirror: Optional upstream-maintained mirror of `upstream`;
        submodule updates only move to a commit present in both
    :param target: The GitHub repository to merge into and open the PR on
    :param head: The repository storing the PR branch; defaults to `target`
    :param mirror_target: Optional repository receiving a copy of every
        fetched upstream branch before any sync happens
    :param branch_map: Upstream branch glob -> target branch; `?` in the
        value is replaced by the upstream branch name
    :param auto_sync_branches: Upstream branches the periodic sync updates
    :param auto_mirror_branches: Upstream branch patterns mirrored as-is
    :param main_branch: Main branch of the target, new branches fork from it
    :param source_branch_latest_commit: Upstream branch -> pinned commit
    :param auto_resolve_target: Paths where the target version always wins
    :param submodule_target: Submodule path to update instead of merging
    :param go_version_file_content: Expected Go version after the sync
    :param go_microsoft_revision_file_content: Expected revision after the sync
    """

    upstream: str
    target: str
    upstream_mirror: str = ''
    head: str = ''
    mirror_target: str = ''
    branch_map: dict = field(default_factory=dict)
    auto_sync_branches: list = field(default_factory=list)
    auto_mirror_branches: list = field(default_factory=list)
    main_branch: str = ''
    source_branch_latest_commit: dict = field(default_factory=dict)
    auto_resolve_target: list = field(default_factory=list)
    submodule_target: str = ''
    go_version_file_content: str = ''
    go_microsoft_revision_file_content: str = ''

    @classmethod
    def from_dict(cls, data, index=0):
        """Builds an entry from one parsed configuration list item.

        :param data: The parsed mapping
        :param index: Position in the configuration list, for messages
        :returns: The ConfigEntry
        """
        if not isinstance(data, dict):
            raise ConfigError('Configuration error: entry #{} must be a mapping.'.format(index))
        for k in REQUIRED_FIELDS:
            if not data.get(k):
                raise ConfigError('Configuration error: entry #{} {} missing.'.format(index, k))
        kwargs = dict()
        for k, v in data.items():
            if k not in FIELDS:
                logger.warning('Configuration warning: entry #%d %s is extraneous, ignoring.', index, k)
                continue
            if v is None:
                continue
            if k in MAPPING_FIELDS:
                if not isinstance(v, dict):
                    raise ConfigError('Configuration error: entry #{} {} must be a mapping.'.format(index, k))
                v = {str(mk): str(mv) for mk, mv in v.items()}
            elif k in LIST_FIELDS:
                if not isinstance(v, list):
                    raise ConfigError('Configuration error: entry #{} {} must be a list.'.format(index, k))
                v = [str(x) for x in v]
            else:
                v = str(v)
            kwargs[FIELDS[k]] = v
        return cls(**kwargs)

    def pr_branch_storage_repo(self):
        """Returns the repository to store the PR branch on."""
        if self.head:
            return self.head
        return self.target

    def target_branch(self, upstream):
        """Maps an upstream branch to the corresponding target branch.

        Every `branch_map` key is glob matched against `upstream`, with `*`
        and `?` stopping at `/`.  An upstream branch matching more than one
        key is ambiguous and raises ConfigError rather than picking one.

        :param upstream: The upstream branch name
        :returns: The target branch name, or an empty string if nothing matches
        """
        matched = []
        found = ''
        for pattern, target in sorted(self.branch_map.items()):
            if regex.fullmatch(_glob_regex(pattern), upstream):
                matched.append(pattern)
                found = target.replace('?', upstream)
        if len(matched) > 1:
            raise ConfigError('Found more than one target branch match for {}: {}'.format(upstream, matched))
        return found


def load_config(path):
    """Loads the sync configuration file.

    Files ending in `.yaml` or `.yml` are parsed as YAML, anything else as
    JSON.  The document must be a list of entries.

    :param path: Path to the configuration file
    :returns: A list of ConfigEntry objects
    """
    logger.info('Loading sync configuration from %s', path)
    try:
        with open(path) as f:
            if path.endswith(('.yaml', '.yml')):
                y = yaml.safe_load(f)
            else:
                y = json.load(f)
    except OSError as e:
        raise ConfigError('Failed to read sync config file {}: {}'.format(path, e)) from e
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError('Failed to parse sync config file {}: {}'.format(path, e)) from e
    if y is None:
        y = []
    if not isinstance(y, list):
        raise ConfigError('Configuration error: {} must contain a list of entries.'.format(path))
    entries = [ConfigEntry.from_dict(d, i) for i, d in enumerate(y)]
    logger.info('Found %d sync configuration entries.', len(entries))
    return entries


def find_target(entries, repo, upstream):
    """Searches for the entry syncing `upstream` into the `repo` target.

    Unlike target_branch(), the upstream branch has to be an exact BranchMap
    key.

    :param entries: The loaded ConfigEntry list
    :param repo: The target repository, in `owner/name` form
    :param upstream: The upstream branch name
    :returns: An (entry, target branch) tuple, or (None, '') if not found
    """
    found_entry = None
    found_target = ''
    for entry in entries:
        if not entry.target.endswith(repo):
            continue
        for u, target in entry.branch_map.items():
            if u != upstream:
                continue
            if found_entry is not None:
                raise ConfigError(
                    'Found entry matching target repo and upstream branch {} {} targeting {}, '
                    'but already found {} targeting {}'.format(
                        entry.target, u, target, found_entry.target, found_target))
            found_entry = entry
            found_target = target
    return found_entry, found_target


def narrow_to_branch(entry, upstream, target, commit=''):
    """Returns a copy of the entry that only syncs one branch.

    :param entry: The ConfigEntry to narrow
    :param upstream: The upstream branch to keep
    :param target: The target branch it maps to
    :param commit: Optional upstream commit to pin the sync to
    :returns: A new ConfigEntry
    """
    narrowed = copy.deepcopy(entry)
    narrowed.branch_map = {upstream: target}
    narrowed.auto_sync_branches = [upstream]
    if commit:
        narrowed.source_branch_latest_commit = {upstream: commit}
    return narrowed
