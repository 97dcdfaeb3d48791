"""Validation of the report posts: front matter, images and code snippets."""

from .frontmatter import FrontMatter, PostValidationError, parse_front_matter, split_front_matter
from .validation import (
    CodeBlock,
    ImageReference,
    PostIssue,
    PostReport,
    find_code_blocks,
    find_image_references,
    validate_post,
    validate_site,
)

__all__ = [
    "CodeBlock",
    "FrontMatter",
    "ImageReference",
    "PostIssue",
    "PostReport",
    "PostValidationError",
    "find_code_blocks",
    "find_image_references",
    "parse_front_matter",
    "split_front_matter",
    "validate_post",
    "validate_site",
]
