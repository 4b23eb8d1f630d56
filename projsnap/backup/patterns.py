"""
Include/exclude glob rules evaluated against snapshot-relative paths.

Rules:
- `*`, `?` and `[...]` match inside a single path segment
- A pattern without '/' matches any segment at any depth (e.g. __pycache__, *.pyc)
- A pattern with '/' is anchored at the root and matches the path or any ancestor
- A trailing '/' restricts the rule to directories
- A leading '**/' means "at any depth"
- Exclude rules always win over include rules
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Iterable, List, Optional, Tuple

from projsnap.errors import InvalidPattern


INCLUDE = 'include'
EXCLUDE = 'exclude'

DEFAULT_EXCLUDE_PATTERNS = (
    '__pycache__',
    '*.pyc',
    '*.pyo',
    '.venv',
    'venv',
    '.git',
    '.hg',
    '.svn',
    '.mypy_cache',
    '.pytest_cache',
    '.ipynb_checkpoints',
    '.DS_Store',
)


def normalize_path(path) -> str:
    """
    Normalize a relative path to forward slashes without leading './' or '/'.

    Args:
        path: str or PathLike relative to the snapshot root

    Returns:
        Slash-separated relative path ('' for the root itself)
    """
    text = str(path).replace('\\', '/')
    segments = [s for s in text.split('/') if s and s != '.']
    return '/'.join(segments)


@dataclass(frozen=True)
class PatternRule:
    """A single glob pattern with include or exclude polarity."""

    pattern: str
    polarity: str = EXCLUDE
    segments: Tuple[str, ...] = field(init=False, repr=False, compare=False)
    anchored: bool = field(init=False, repr=False, compare=False)
    dir_only: bool = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.polarity not in (INCLUDE, EXCLUDE):
            raise InvalidPattern(f"Invalid polarity {self.polarity!r} for pattern {self.pattern!r}")
        if not isinstance(self.pattern, str):
            raise InvalidPattern(f"Pattern must be a string, got {type(self.pattern).__name__}")

        text = self.pattern.strip().replace('\\', '/')
        if not text:
            raise InvalidPattern("Pattern must not be empty")
        if '\x00' in text:
            raise InvalidPattern(f"Pattern contains a NUL byte: {self.pattern!r}")

        dir_only = text.endswith('/')
        anchored = '/' in text.rstrip('/')

        if text.startswith('**/'):
            text = text[3:]
            anchored = '/' in text.rstrip('/')
            if anchored:
                raise InvalidPattern(
                    f"'**/' may only prefix a single-segment pattern: {self.pattern!r}"
                )

        segments = tuple(s for s in text.split('/') if s)
        if not segments:
            raise InvalidPattern(f"Pattern has no path segments: {self.pattern!r}")
        for segment in segments:
            if segment == '..':
                raise InvalidPattern(f"Pattern must not contain '..': {self.pattern!r}")
            if '**' in segment:
                raise InvalidPattern(f"'**' is only supported as a leading '**/': {self.pattern!r}")

        # frozen dataclass: derived fields go through object.__setattr__
        object.__setattr__(self, 'segments', segments)
        object.__setattr__(self, 'anchored', anchored)
        object.__setattr__(self, 'dir_only', dir_only)

    def matches(self, path: str, is_dir: bool = False) -> bool:
        """
        Check whether the rule matches a normalized relative path or one of its ancestors.

        Args:
            path: Normalized relative path (see normalize_path)
            is_dir: Whether the path itself is a directory

        Returns:
            True if the rule matches
        """
        parts = path.split('/') if path else []
        if not parts:
            return False

        if self.anchored:
            count = len(self.segments)
            if len(parts) < count:
                return False
            if self.dir_only and len(parts) == count and not is_dir:
                return False
            return all(fnmatchcase(part, seg) for part, seg in zip(parts, self.segments))

        pattern = self.segments[0]
        last = len(parts) - 1
        for index, part in enumerate(parts):
            if self.dir_only and index == last and not is_dir:
                continue
            if fnmatchcase(part, pattern):
                return True
        return False


@dataclass(frozen=True)
class PatternSet:
    """
    Immutable collection of include and exclude rules.

    An empty include list means "include everything".
    """

    rules: Tuple[PatternRule, ...] = ()

    def __post_init__(self):
        rules = tuple(self.rules)
        for rule in rules:
            if not isinstance(rule, PatternRule):
                raise InvalidPattern(f"Expected PatternRule, got {type(rule).__name__}")
        object.__setattr__(self, 'rules', rules)

    @classmethod
    def from_lists(cls, include: Optional[Iterable[str]] = None,
                   exclude: Optional[Iterable[str]] = None) -> 'PatternSet':
        """
        Build a PatternSet from plain include/exclude pattern lists.

        Raises:
            InvalidPattern: If any pattern is invalid
        """
        if isinstance(include, str) or isinstance(exclude, str):
            raise InvalidPattern("include/exclude must be lists of patterns, not a single string")
        rules = [PatternRule(p, INCLUDE) for p in (include or [])]
        rules.extend(PatternRule(p, EXCLUDE) for p in (exclude or []))
        return cls(tuple(rules))

    @classmethod
    def with_defaults(cls, include: Optional[Iterable[str]] = None,
                      exclude: Optional[Iterable[str]] = None) -> 'PatternSet':
        """Same as from_lists, with DEFAULT_EXCLUDE_PATTERNS prepended to the excludes."""
        return cls.from_lists(include, list(DEFAULT_EXCLUDE_PATTERNS) + list(exclude or []))

    @property
    def includes(self) -> List[str]:
        return [r.pattern for r in self.rules if r.polarity == INCLUDE]

    @property
    def excludes(self) -> List[str]:
        return [r.pattern for r in self.rules if r.polarity == EXCLUDE]

    def to_dict(self) -> dict:
        return {'include': self.includes, 'exclude': self.excludes}

    def is_excluded(self, path, is_dir: bool = False) -> bool:
        return is_excluded(path, self, is_dir=is_dir)

    def matches(self, path, is_dir: bool = False) -> bool:
        return matches(path, self, is_dir=is_dir)


def is_excluded(path, pattern_set: PatternSet, is_dir: bool = False) -> bool:
    """Return True if any exclude rule matches the path (or an ancestor of it)."""
    normalized = normalize_path(path)
    return any(
        rule.matches(normalized, is_dir)
        for rule in pattern_set.rules
        if rule.polarity == EXCLUDE
    )


def matches(path, pattern_set: PatternSet, is_dir: bool = False) -> bool:
    """
    Evaluate a PatternSet against a relative path.

    Args:
        path: Path relative to the snapshot root
        pattern_set: Rules to evaluate
        is_dir: Whether the path is a directory (for rules ending in '/')

    Returns:
        True if the path is included and not excluded
    """
    normalized = normalize_path(path)
    if not normalized:
        return False

    includes = [r for r in pattern_set.rules if r.polarity == INCLUDE]
    if includes and not any(r.matches(normalized, is_dir) for r in includes):
        return False

    return not is_excluded(normalized, pattern_set, is_dir=is_dir)
