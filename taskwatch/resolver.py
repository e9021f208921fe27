"""Map changed paths to the targets whose glob patterns match them.

Patterns are gitwildmatch lines (the ``.gitignore`` dialect, via
``pathspec``) interpreted relative to each target's working directory:
``*`` and ``?`` never cross a path separator, ``[...]`` is a character class
and ``**`` spans any number of directories. Absolute patterns and patterns
reaching outside the working directory with ``..`` are allowed. A pattern
starting with ``!`` excludes paths matched by earlier patterns.

Every pattern is anchored to an absolute directory before it is compiled, so
``*.js`` only matches files directly inside the working directory, and the
changed path is matched in its absolute form.

Wildcards do not match names starting with a dot unless the target sets
``dot`` or one of its patterns names such a file or directory explicitly.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

import pathspec

from taskwatch.models import ChangeBatch, ChangeKind, WatchTarget

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

_MAGIC = re.compile(r"[*?\[]")
_ESCAPE = re.compile(r"([*?\[\]\\])")


def split_patterns(patterns: Iterable[str]) -> Tuple[List[str], List[str]]:
    """Split patterns into (include, exclude) lists."""
    include: List[str] = []
    exclude: List[str] = []
    for pattern in patterns:
        if pattern.startswith("!"):
            exclude.append(pattern[1:])
        else:
            include.append(pattern)
    return include, exclude


def static_prefix(pattern: str) -> str:
    """Return the leading directory part of a pattern that contains no wildcards."""
    parts = pattern.split("/")
    prefix: List[str] = []
    for part in parts[:-1]:
        if _MAGIC.search(part) or part == "**":
            break
        prefix.append(part)
    return "/".join(prefix)


def anchor_pattern(pattern: str, cwd: Path) -> str:
    """Rewrite a pattern as a gitwildmatch line anchored at the filesystem root.

    Wildcard characters in ``cwd`` itself are escaped so that only the
    pattern part is interpreted.

    Args:
        pattern (str): A glob relative to ``cwd`` or absolute, optionally
            negated with a leading ``!``.
        cwd (Path): The target's absolute working directory.

    Returns:
        str: The anchored line, e.g. ``/home/me/app/lib/*.js``.

    Example:
        >>> anchor_pattern("!lib/../vendor/**", Path("/app"))
        '!/app/vendor/**'
    """
    negate = pattern.startswith("!")
    body = (pattern[1:] if negate else pattern).replace(os.sep, "/")
    if os.path.isabs(body):
        line = posixpath.normpath(body)
    else:
        base = _ESCAPE.sub(r"\\\1", cwd.as_posix())
        line = posixpath.normpath(f"{base}/{body}")
    if not line.startswith("/"):
        # Drive-letter paths on Windows.
        line = "/" + line
    return ("!" if negate else "") + line


def build_pathspec(target: WatchTarget) -> pathspec.PathSpec:
    """Compile a target's patterns into one ``PathSpec``.

    Raises:
        ValueError: If a pattern cannot be compiled.
    """
    lines = [anchor_pattern(p, target.cwd) for p in target.patterns]
    try:
        return pathspec.PathSpec.from_lines("gitwildmatch", lines)
    except ValueError as e:
        raise ValueError(f"Invalid pattern for target {target.name}: {e}") from e


def names_hidden(pattern: str) -> bool:
    """Check whether a pattern spells out a name starting with a dot."""
    return any(part.startswith(".") and part not in (".", "..") for part in pattern.split("/"))


def relative_to_cwd(path: Path, cwd: Path) -> str:
    """Express ``path`` relative to ``cwd`` (may contain ``..`` for outside paths)."""
    try:
        return str(path.relative_to(cwd))
    except ValueError:
        return os.path.relpath(path, cwd)


def _is_hidden(rel: str) -> bool:
    return any(part.startswith(".") and part != ".." for part in Path(rel).parts)


class TargetResolver:
    """Resolve changed paths to targets and rewrite paths for the task collaborator.

    Targets keep their configuration-declaration order, which is also the
    order in which fan-out results are returned.
    """

    def __init__(self, targets: Sequence[WatchTarget]) -> None:
        self.targets: List[WatchTarget] = list(targets)
        names = [t.name for t in self.targets]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate target names: {names}")
        self._specs: Dict[str, pathspec.PathSpec] = {t.name: build_pathspec(t) for t in self.targets}
        self._allows_hidden: Dict[str, bool] = {
            t.name: t.dot or any(names_hidden(p) for p in split_patterns(t.patterns)[0])
            for t in self.targets
        }

    def matches(self, target: WatchTarget, path: Path) -> bool:
        """Check whether an absolute path matches the target's patterns."""
        if not self._specs[target.name].match_file(path.as_posix().lstrip("/")):
            return False
        if self._allows_hidden[target.name]:
            return True
        return not _is_hidden(relative_to_cwd(path, target.cwd))

    def accepts(self, target: WatchTarget, kind: ChangeKind) -> bool:
        return kind in target.events

    def targets_for(self, path: Path, kind: ChangeKind = ChangeKind.CHANGED) -> List[WatchTarget]:
        """Return every target that should react to a change of ``path``.

        A single path may fan out to several targets; each of them is then
        debounced independently.

        Args:
            path (Path): Absolute path of the changed file.
            kind (ChangeKind): The kind of change, checked against each target's
                ``events`` filter.

        Returns:
            List[WatchTarget]: Matching targets in declaration order.
        """
        matched = [t for t in self.targets if self.accepts(t, kind) and self.matches(t, path)]
        if not matched and logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"No target matches {path}")
        return matched

    def relative_paths(self, target: WatchTarget, batch: ChangeBatch) -> List[str]:
        """Return the batch's paths relative to the target's cwd, sorted."""
        return sorted(relative_to_cwd(path, target.cwd) for path in batch.paths)

    def watch_roots(self) -> List[Path]:
        """Compute the directories that must be watched to see every target's files.

        Roots nested inside other roots are dropped since watching is recursive.

        Returns:
            List[Path]: Absolute directories, sorted.
        """
        roots = set()
        for target in self.targets:
            include, _ = split_patterns(target.patterns)
            for pattern in include:
                prefix = static_prefix(pattern.replace(os.sep, "/"))
                root = (target.cwd / prefix) if prefix else target.cwd
                roots.add(Path(os.path.normpath(root)))

        collapsed: List[Path] = []
        for root in sorted(roots, key=lambda p: len(p.parts)):
            if not any(root == kept or kept in root.parents for kept in collapsed):
                collapsed.append(root)
        return sorted(collapsed)

    def __repr__(self) -> str:
        return f"<TargetResolver targets={[t.name for t in self.targets]}>"
