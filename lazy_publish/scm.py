"""Source-control gateway.

The pipeline needs two things from source control: the branch a release
runs on (which decides the version policy) and, for the commit-range
change detection variant, the list of files changed in a revision range.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from .shell import git


class SourceControlGateway(Protocol):
    def current_branch(self) -> str: ...

    def diff_changed_paths(self, rev_range: str) -> list[str]: ...


class GitGateway:
    """SourceControlGateway backed by the git CLI.

    In GitHub Actions the branch comes from $GITHUB_REF (refs/heads/main →
    main), since checkouts there are usually on a detached HEAD.
    """

    def __init__(self, root: Path | None = None) -> None:
        self._root = root

    def current_branch(self) -> str:
        ref = os.environ.get("GITHUB_REF", "")
        if ref:
            return ref.split("/")[-1]
        branch = git("rev-parse", "--abbrev-ref", "HEAD", check=False, cwd=self._root)
        return "" if branch == "HEAD" else branch

    def diff_changed_paths(self, rev_range: str) -> list[str]:
        """Files changed in rev_range (e.g. "v1.2.0..HEAD"), relative to the root."""
        output = git("diff", "--name-only", rev_range, cwd=self._root)
        return output.splitlines()
