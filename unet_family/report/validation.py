"""
Content validation for the report posts.

Checks that a post's front matter parses, that every image it references
exists in the site tree and that its python snippets compile.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .frontmatter import FrontMatter, PostValidationError, parse_front_matter

logger = logging.getLogger(__name__)

# {{ '/assets/x.png' | relative_url }} with single or double quotes
RELATIVE_URL_RE = re.compile(r"""\{\{\s*(['"])(?P<path>[^'"]+)\1\s*\|\s*relative_url\s*\}\}""")
MARKDOWN_IMAGE_RE = re.compile(r"!\[(?P<alt>[^\]]*)\]\(\s*(?P<target>\{\{.*?\}\}|[^)\s]+)[^)]*\)")
HTML_IMAGE_RE = re.compile(r"""<img\b[^>]*?\bsrc\s*=\s*(['"])(?P<target>.*?)\1""", re.IGNORECASE)
FENCE_RE = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})\s*(?P<lang>[\w+-]*)")
CLOSING_FENCE_RE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})\s*$")

EXTERNAL_PREFIXES = ("http://", "https://", "//", "data:")


@dataclass
class ImageReference:
    """One image referenced from a post body."""

    target: str
    path: str
    line: int
    alt: str = ""

    @property
    def external(self) -> bool:
        return self.path.lower().startswith(EXTERNAL_PREFIXES)

    @property
    def site_relative(self) -> bool:
        return self.path.startswith("/") and not self.external


@dataclass
class CodeBlock:
    """A fenced code block."""

    language: str
    code: str
    line: int


@dataclass
class PostIssue:
    severity: str  # "error" or "warning"
    location: str
    message: str


@dataclass
class PostReport:
    """Validation outcome for one post."""

    path: Path
    front_matter: Optional[FrontMatter] = None
    issues: List[PostIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(issue.severity == "error" for issue in self.issues)

    def error(self, location: str, message: str) -> None:
        self.issues.append(PostIssue("error", location, message))

    def warning(self, location: str, message: str) -> None:
        self.issues.append(PostIssue("warning", location, message))


def resolve_target(target: str) -> str:
    """Resolve a ``relative_url`` template to its path; other targets pass through."""
    match = RELATIVE_URL_RE.search(target)
    if match:
        return match.group("path").strip()
    return target.strip()


def _is_closing_fence(line: str, fence: str) -> bool:
    """A bare run of the opening fence character, at least as long, indented at most 3."""
    match = CLOSING_FENCE_RE.match(line)
    if not match:
        return False
    closing = match.group("fence")
    return closing[0] == fence[0] and len(closing) >= len(fence)


def _fenced_regions(lines: List[str]) -> List[Tuple[int, int, str]]:
    """(opening index, closing index, language) per fence; unclosed fences run to the end."""
    regions = []
    i = 0
    while i < len(lines):
        match = FENCE_RE.match(lines[i])
        if not match:
            i += 1
            continue

        fence = match.group("fence")
        start = i
        i += 1
        while i < len(lines) and not _is_closing_fence(lines[i], fence):
            i += 1

        regions.append((start, i, match.group("lang").lower()))
        i += 1
    return regions


def find_image_references(body: str) -> List[ImageReference]:
    """
    Find markdown and HTML image references in a post body.

    Image syntax inside fenced code is not a reference.

    Args:
        body: Markdown body.

    Returns:
        References in order of appearance with 1-based line numbers
        relative to the body.
    """
    lines = body.splitlines()
    fenced = set()
    for start, end, _ in _fenced_regions(lines):
        fenced.update(range(start, end + 1))

    references = []
    for lineno, line in enumerate(lines, start=1):
        if lineno - 1 in fenced:
            continue
        found = []
        for match in MARKDOWN_IMAGE_RE.finditer(line):
            found.append((match.start(), match.group("target"), match.group("alt")))
        for match in HTML_IMAGE_RE.finditer(line):
            found.append((match.start(), match.group("target"), ""))

        for _, target, alt in sorted(found):
            references.append(
                ImageReference(target=target, path=resolve_target(target), line=lineno, alt=alt)
            )
    return references


def find_code_blocks(body: str) -> List[CodeBlock]:
    """
    Find fenced code blocks.

    Args:
        body: Markdown body.

    Returns:
        Code blocks with their (lowercased) language tag and the body line
        of the opening fence.
    """
    lines = body.splitlines()
    blocks = []
    for start, end, language in _fenced_regions(lines):
        code = "\n".join(lines[start + 1:end]) + "\n"
        blocks.append(CodeBlock(language=language, code=code, line=start + 1))
    return blocks


def _default_site_root(post_path: Path) -> Path:
    for parent in post_path.parents:
        if parent.name == "_posts":
            return parent.parent
    return post_path.parent


def validate_post(
    path: Union[str, Path],
    site_root: Optional[Union[str, Path]] = None,
) -> PostReport:
    """
    Validate one post.

    Args:
        path: Post markdown file.
        site_root: Site directory that site-relative image paths resolve
            against; defaults to the parent of the ``_posts`` directory.

    Returns:
        PostReport with every issue found.
    """
    path = Path(path)
    report = PostReport(path=path)
    site_root = Path(site_root) if site_root else _default_site_root(path.resolve())

    text = path.read_text(encoding="utf-8")
    try:
        report.front_matter, body = parse_front_matter(text)
    except PostValidationError as e:
        report.error("front matter", str(e))
        return report

    # Body line numbers are offset by the front matter block
    offset = text[: len(text) - len(body)].count("\n")

    images = find_image_references(body)
    if not images:
        report.warning("body", "Post references no images")

    for image in images:
        location = f"line {image.line + offset}"
        if image.external:
            logger.debug(f"{path.name} {location}: skipping external image {image.path}")
            continue

        if image.site_relative:
            resolved = site_root / image.path.lstrip("/")
        else:
            resolved = path.parent / image.path

        if not resolved.is_file():
            report.error(location, f"Image not found: {image.path} ({resolved})")

    for block in find_code_blocks(body):
        if block.language not in ("python", "py"):
            continue
        try:
            compile(block.code, f"{path.name}:{block.line + offset}", "exec")
        except SyntaxError as e:
            report.error(f"line {block.line + offset}", f"Python snippet does not compile: {e.msg}")

    return report


def validate_site(site_root: Union[str, Path]) -> List[PostReport]:
    """Validate every ``_posts/*.md`` under a site directory."""
    site_root = Path(site_root)
    posts = sorted((site_root / "_posts").glob("*.md"))
    if not posts:
        logger.warning(f"No posts found under {site_root / '_posts'}")
    return [validate_post(p, site_root=site_root) for p in posts]
