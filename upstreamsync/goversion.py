# SPDX-License-Identifier: MIT

"""Go toolset version parsing for the Microsoft build of Go.

Versions look like `major.minor.patch[-revision][-note]`, e.g. `1.18.2-1`
or `1.22.0-2-fips`.  Any number part may carry a prerelease suffix, e.g.
`1.18rc1`.  Missing parts get defaults: minor and patch `0`, revision `1`.
"""

import regex

from dataclasses import dataclass

# First non-digit character onwards, e.g. `rc1` in `18rc1`
prereleasere = regex.compile(r'\D.*$')


def _extract_prerelease(part):
    m = prereleasere.search(part)
    if m is None:
        return part, ''
    return part[:m.start()], m.group(0)


@dataclass
class GoVersion:
    original: str
    major: str
    minor: str = '0'
    patch: str = '0'
    revision: str = '1'
    note: str = ''
    prerelease: str = ''

    @classmethod
    def parse(cls, text):
        """Parses a version string, filling in defaults for missing parts.

        A dash-separated part right after the numbers is the revision if it
        is an integer; everything after that is the note.

        :param text: The version string
        :returns: A GoVersion
        """
        dash = text.split('-')
        revision = '1'
        note = ''
        if len(dash) > 1:
            begin = 1
            if regex.fullmatch(r'[+-]?\d+', dash[1]):
                revision = dash[1]
                begin = 2
            note = '-'.join(dash[begin:])
        dot = dash[0].split('.')
        major = dot[0]
        minor = dot[1] if len(dot) > 1 else '0'
        patch = dot[2] if len(dot) > 2 else '0'
        parts = []
        prerelease = ''
        for p in (major, minor, patch):
            p, found = _extract_prerelease(p)
            if found:
                prerelease = found
            parts.append(p)
        return cls(text, *parts, revision=revision, note=note, prerelease=prerelease)

    def major_minor(self):
        return self.major + '.' + self.minor

    def major_minor_patch(self):
        return self.major_minor() + '.' + self.patch

    def note_with_prefix(self):
        if not self.note:
            return ''
        return '-' + self.note

    def full(self):
        """The normalized version, including the note if any."""
        return self.major_minor_patch() + '-' + self.revision + self.note_with_prefix()

    def release_branch(self):
        """The upstream release branch carrying this version."""
        return 'release-branch.go' + self.major_minor()

    def __str__(self):
        return '{} ({})'.format(self.original, self.full())
