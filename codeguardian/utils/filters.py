"""Path filtering for deciding which changed files are reviewed.

Rules are glob patterns evaluated in order; a leading ``!`` makes a rule an
exclusion and the last matching rule wins. ``**`` spans directories and a
leading ``**/`` also matches files at the repository root.
"""

import re
from collections.abc import Iterable
from functools import lru_cache
from re import Pattern

# Binary, generated and vendored content is excluded by default
DEFAULT_PATH_FILTERS: tuple[str, ...] = tuple(
    f"!{pattern}"
    for pattern in (
        "dist/**",
        "**/*.app",
        "**/*.bin",
        "**/*.bz2",
        "**/*.class",
        "**/*.db",
        "**/*.csv",
        "**/*.tsv",
        "**/*.dat",
        "**/*.dll",
        "**/*.dylib",
        "**/*.egg",
        "**/*.glif",
        "**/*.gz",
        "**/*.xz",
        "**/*.zip",
        "**/*.7z",
        "**/*.rar",
        "**/*.zst",
        "**/*.ico",
        "**/*.jar",
        "**/*.tar",
        "**/*.war",
        "**/*.lo",
        "**/*.log",
        "**/*.mp3",
        "**/*.wav",
        "**/*.wma",
        "**/*.mp4",
        "**/*.avi",
        "**/*.mkv",
        "**/*.wmv",
        "**/*.m4a",
        "**/*.m4v",
        "**/*.3gp",
        "**/*.3g2",
        "**/*.rm",
        "**/*.mov",
        "**/*.flv",
        "**/*.iso",
        "**/*.swf",
        "**/*.flac",
        "**/*.nar",
        "**/*.o",
        "**/*.ogg",
        "**/*.otf",
        "**/*.p",
        "**/*.pdf",
        "**/*.doc",
        "**/*.docx",
        "**/*.xls",
        "**/*.xlsx",
        "**/*.ppt",
        "**/*.pptx",
        "**/*.pkl",
        "**/*.pickle",
        "**/*.pyc",
        "**/*.pyd",
        "**/*.pyo",
        "**/*.pub",
        "**/*.pem",
        "**/*.rkt",
        "**/*.so",
        "**/*.ss",
        "**/*.eot",
        "**/*.exe",
        "**/*.pb.go",
        "**/*.lock",
        "**/*.ttf",
        "**/*.yaml",
        "**/*.yml",
        "**/*.cfg",
        "**/*.toml",
        "**/*.ini",
        "**/*.mod",
        "**/*.sum",
        "**/*.work",
        "**/*.json",
        "**/*.mmd",
        "**/*.svg",
        "**/*.jpeg",
        "**/*.jpg",
        "**/*.png",
        "**/*.gif",
        "**/*.bmp",
        "**/*.tiff",
        "**/*.webm",
        "**/*.woff",
        "**/*.woff2",
        "**/*.dot",
        "**/*.md5sum",
        "**/*.wasm",
        "**/*.snap",
        "**/*.parquet",
        "**/gen/**",
        "**/_gen/**",
        "**/generated/**",
        "**/@generated/**",
        "**/vendor/**",
        "**/*.min.js",
        "**/*.min.js.map",
        "**/*.min.js.css",
        "**/*.tfstate",
        "**/*.tfstate.backup",
    )
)


@lru_cache(maxsize=1024)
def glob_to_regex(pattern: str) -> Pattern[str]:
    """Translate a glob pattern into an anchored regular expression.

    Args:
        pattern: Glob such as ``src/**/*.py`` or ``!dist/**`` (without the ``!``)

    Returns:
        Compiled pattern matching whole repository-relative paths
    """
    parts: list[str] = []
    i = 0
    length = len(pattern)
    while i < length:
        char = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif char == "*":
            parts.append("[^/]*")
            i += 1
        elif char == "?":
            parts.append("[^/]")
            i += 1
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
                i += 1
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                i = end + 1
        else:
            parts.append(re.escape(char))
            i += 1
    return re.compile("".join(parts) + r"\Z")


def _normalize(path: str) -> str:
    return path[2:] if path.startswith("./") else path


class PathFilter:
    """Ordered allow/deny glob list where the last matching rule wins."""

    def __init__(self, rules: Iterable[str] = ()) -> None:
        self.rules: list[tuple[str, bool]] = []
        for raw in rules:
            rule = raw.strip()
            if not rule or rule.startswith("#"):
                continue
            exclude = rule.startswith("!")
            glob = _normalize(rule[1:].strip() if exclude else rule)
            self.rules.append((glob, exclude))
        self.has_inclusion_rule = any(not exclude for _, exclude in self.rules)

    def __repr__(self) -> str:
        return f"PathFilter(rules={len(self.rules)})"

    def check(self, path: str) -> bool:
        """Return True if ``path`` should be reviewed."""
        normalized = _normalize(path)
        decision: bool | None = None
        for glob, exclude in self.rules:
            if glob_to_regex(glob).match(normalized):
                decision = not exclude
        if decision is None:
            return not self.has_inclusion_rule
        return decision


def should_review_file(file_path: str, rules: Iterable[str] = DEFAULT_PATH_FILTERS) -> bool:
    """Determine if a file passes the given path filter rules.

    Args:
        file_path: Repository-relative path of the file
        rules: Ordered glob rules, defaults to the built-in exclusion list

    Returns:
        True if the file should be reviewed, False if it is excluded
    """
    return PathFilter(rules).check(file_path)
