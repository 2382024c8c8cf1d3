# SPDX-License-Identifier: MIT

import os
import subprocess

GIT_HASH_REGEX = r"^[0-9a-f]{40}$"

DATA_DIR = os.path.join(os.path.abspath(os.path.dirname(__file__)), "data")

GIT_USER_NAME = "John Doe"
GIT_USER_EMAIL = "jdoe@example.com"


def strings_with_substring(strings, substring):
    return [string for string in strings if substring in string]


def run_cmds(cmds):
    """Runs a list of commands, failing on the first error.  A ["cd", dir]
    pseudo command changes the working directory of the following ones.
    """
    cwd = None
    for cmd in cmds:
        if cmd[0] == "cd":
            cwd = cmd[1]
            continue
        subprocess.run(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=True,
        )


def git_identity(repodir):
    return [
        ["cd", repodir],
        ["git", "config", "user.name", GIT_USER_NAME],
        ["git", "config", "user.email", GIT_USER_EMAIL],
    ]


def add_mock_file(repodir, path, content, message=None):
    with open(os.path.join(repodir, path), "w") as f:
        f.write(content)
    run_cmds(
        [
            ["cd", repodir],
            ["git", "add", "."],
            ["git", "commit", "-m", message or "Add " + path],
        ]
    )


def setup_mock_repo(repodir, branch):
    """Creates a repository with `branch` holding a single README.md commit."""
    os.makedirs(repodir)
    run_cmds(
        [["cd", repodir], ["git", "init"]]
        + git_identity(repodir)
        + [["git", "checkout", "-b", branch]]
    )
    add_mock_file(repodir, "README.md", "Hello")


def add_mock_submodule(repodir, upstream, path="go"):
    # protocol.file.allow lets the submodule be cloned from a local path
    run_cmds(
        [
            ["cd", repodir],
            [
                "git",
                "-c",
                "protocol.file.allow=always",
                "submodule",
                "add",
                upstream,
                path,
            ],
            ["git", "commit", "-m", "Add submodule"],
        ]
    )


def setup_fork_repos(root, target_branch="microsoft/main"):
    """Creates an upstream repository and a target repository forked from it.

    The paths end in `<owner>/<repo>` so they parse like GitHub URLs.

    :returns: An (upstream, target) tuple of paths
    """
    upstream = os.path.join(root, "upstream", "golang", "go")
    target = os.path.join(root, "target", "microsoft", "go")
    setup_mock_repo(upstream, "main")
    run_cmds(
        [["git", "clone", upstream, target]]
        + git_identity(target)
        + [["git", "checkout", "-b", target_branch]]
    )
    return upstream, target


def setup_submodule_repos(root, target_branch="microsoft/main"):
    """Creates an upstream repository and a target repository tracking it
    as the `go` submodule.

    :returns: An (upstream, target) tuple of paths
    """
    upstream = os.path.join(root, "upstream", "golang", "go")
    target = os.path.join(root, "target", "microsoft", "go")
    setup_mock_repo(upstream, "main")
    setup_mock_repo(target, target_branch)
    add_mock_submodule(target, upstream)
    return upstream, target


def last_commit(repodir, ref="HEAD"):
    cmd = ["git", "rev-parse", "--verify", ref]
    proc = subprocess.Popen(
        cmd, cwd=repodir, stdout=subprocess.PIPE, stderr=subprocess.PIPE
    )
    out, err = proc.communicate()
    return out.decode().rstrip()


def show_file(repodir, ref, path):
    proc = subprocess.run(
        ["git", "show", "{}:{}".format(ref, path)],
        cwd=repodir,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    if proc.returncode != 0:
        return None
    return proc.stdout.decode()


def submodule_commit(repodir, ref, path="go"):
    proc = subprocess.run(
        ["git", "ls-tree", ref, path],
        cwd=repodir,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        check=True,
    )
    # <mode> SP <type> SP <object> TAB <path>
    return proc.stdout.decode().split()[2]


def read_file(path):
    with open(path) as f:
        return f.read()
