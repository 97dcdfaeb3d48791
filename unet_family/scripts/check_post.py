#!/usr/bin/env python3
"""
Validate report posts: front matter, image references and python snippets.

Usage:
    unet-family-check-post site/_posts/2024-05-20-medical-image-segmentation.md
    unet-family-check-post --site site
"""

import argparse
import logging
from pathlib import Path

from unet_family.report.validation import validate_post, validate_site

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Validate report posts")

    parser.add_argument(
        "paths",
        type=Path,
        nargs="*",
        help="Post markdown files",
    )
    parser.add_argument(
        "--site",
        type=Path,
        help="Site root; validates every _posts/*.md and resolves images against it",
    )

    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)

    if not args.paths and not args.site:
        logger.error("Give post paths or --site")
        return 2

    reports = []
    if args.site:
        reports.extend(validate_site(args.site))
    for path in args.paths:
        if not path.exists():
            logger.error(f"Post not found: {path}")
            return 1
        reports.append(validate_post(path, site_root=args.site))

    for report in reports:
        for issue in report.issues:
            log = logger.error if issue.severity == "error" else logger.warning
            log(f"{report.path.name} {issue.location}: {issue.message}")
        status = "OK" if report.ok else "FAILED"
        logger.info(f"{report.path.name}: {status}")

    return 0 if all(r.ok for r in reports) else 1


if __name__ == "__main__":
    raise SystemExit(main())
