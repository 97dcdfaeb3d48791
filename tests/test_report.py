import datetime
from pathlib import Path

import pytest

from unet_family.report import (
    PostValidationError,
    find_code_blocks,
    find_image_references,
    parse_front_matter,
    split_front_matter,
    validate_post,
    validate_site,
)

SITE_ROOT = Path(__file__).resolve().parents[1] / "site"

POST = """---
layout: post
comments: true
title: "U-Net notes"
author: Team 14
date: 2024-05-20
tags: [segmentation]
---

Intro text.

![diagram]({{ '/assets/images/diagram.svg' | relative_url }})

<img src="local.png" alt="local">

![remote](https://example.org/figure.png)

```python
def f(x):
    return x + 1
```
"""


def _write_site(tmp_path, text=POST, images=("assets/images/diagram.svg",)):
    posts = tmp_path / "_posts"
    posts.mkdir()
    for image in images:
        target = tmp_path / image
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("<svg/>")
    post = posts / "2024-05-20-notes.md"
    post.write_text(text)
    return post


# Front matter

def test_parse_front_matter():
    front_matter, body = parse_front_matter(POST)
    assert front_matter.layout == "post"
    assert front_matter.title == "U-Net notes"
    assert front_matter.authors == ["Team 14"]
    assert front_matter.date == datetime.date(2024, 5, 20)
    assert front_matter.comments is True
    assert front_matter.extra == {"tags": ["segmentation"]}
    assert body.startswith("\nIntro text.")


def test_author_list_and_string_date():
    text = '---\nlayout: post\ntitle: T\nauthor: [A, B]\ndate: "2023-01-02"\n---\nbody\n'
    front_matter, _ = parse_front_matter(text)
    assert front_matter.authors == ["A", "B"]
    assert front_matter.date == datetime.date(2023, 1, 2)
    assert front_matter.comments is False


@pytest.mark.parametrize(
    "text",
    [
        "no front matter\n",
        "---\nlayout: post\n",
        "---\n- a\n- b\n---\n",
        "---\nlayout: post\ntitle: T\nauthor: A\n---\n",
        "---\nlayout: post\ntitle: ''\nauthor: A\ndate: 2024-01-01\n---\n",
        "---\nlayout: post\ntitle: T\nauthor: 3\ndate: 2024-01-01\n---\n",
        "---\nlayout: post\ntitle: T\nauthor: A\ndate: yesterday\n---\n",
        "---\nlayout: post\ntitle: T\nauthor: A\ndate: 2024-01-01\ncomments: maybe\n---\n",
        "---\nlayout: [post\n---\n",
    ],
)
def test_invalid_front_matter(text):
    with pytest.raises(PostValidationError):
        parse_front_matter(text)


def test_split_front_matter():
    yaml_text, body = split_front_matter("---\na: 1\n---\nbody\n")
    assert yaml_text == "a: 1\n"
    assert body == "body\n"


# Body scanning

def test_find_image_references():
    _, body = parse_front_matter(POST)
    images = find_image_references(body)
    assert [i.path for i in images] == [
        "/assets/images/diagram.svg",
        "local.png",
        "https://example.org/figure.png",
    ]
    assert images[0].site_relative and not images[0].external
    assert not images[1].site_relative
    assert images[2].external
    assert images[0].alt == "diagram"
    assert images[0].line == 4


def test_find_code_blocks():
    body = "text\n```python\nx = 1\n```\n~~~\nplain\n~~~\n```bash\nls\n```\n"
    blocks = find_code_blocks(body)
    assert [b.language for b in blocks] == ["python", "", "bash"]
    assert blocks[0].code == "x = 1\n"
    assert blocks[0].line == 2


def test_code_block_needs_bare_closing_fence():
    body = "```\nexample:\n```python\nx = 1\n````\nafter\n"
    blocks = find_code_blocks(body)
    assert len(blocks) == 1
    assert blocks[0].code == "example:\n```python\nx = 1\n"

    # Other fence character does not close
    assert find_code_blocks("~~~\n```\n~~~\n")[0].code == "```\n"


def test_fences_indented_four_spaces_are_code_not_fences():
    assert find_code_blocks("    ```python\n    x = 1\n    ```\n") == []
    assert [b.line for b in find_code_blocks("   ```\nx\n   ```\n")] == [1]


def test_images_inside_fenced_code_are_ignored():
    body = (
        "![real](a.png)\n"
        "```markdown\n"
        "![example](missing.png)\n"
        "<img src=\"also-missing.png\">\n"
        "```\n"
        "![after](b.png)\n"
    )
    images = find_image_references(body)
    assert [(i.path, i.line) for i in images] == [("a.png", 1), ("b.png", 6)]


# Validation

def test_validate_post_reports_missing_local_image(tmp_path):
    post = _write_site(tmp_path)
    report = validate_post(post)

    assert report.front_matter.title == "U-Net notes"
    assert not report.ok
    errors = [i for i in report.issues if i.severity == "error"]
    assert len(errors) == 1
    assert "local.png" in errors[0].message
    # file line: 8 front matter lines + body line 6
    assert errors[0].location == "line 14"


def test_validate_post_ok(tmp_path):
    post = _write_site(tmp_path, images=("assets/images/diagram.svg", "_posts/local.png"))
    report = validate_post(post)
    assert report.ok
    assert report.issues == []


def test_validate_post_code_that_does_not_compile(tmp_path):
    text = POST.replace("return x + 1", "return x +")
    post = _write_site(tmp_path, text=text, images=("assets/images/diagram.svg", "_posts/local.png"))
    report = validate_post(post)
    assert not report.ok
    assert "does not compile" in report.issues[0].message


def test_validate_post_without_images_warns(tmp_path):
    text = "---\nlayout: post\ntitle: T\nauthor: A\ndate: 2024-01-01\n---\nJust text.\n"
    report = validate_post(_write_site(tmp_path, text=text, images=()))
    assert report.ok
    assert [i.severity for i in report.issues] == ["warning"]


def test_validate_post_bad_front_matter(tmp_path):
    report = validate_post(_write_site(tmp_path, text="no front matter\n", images=()))
    assert not report.ok
    assert report.front_matter is None
    assert report.issues[0].location == "front matter"


def test_shipped_posts_validate():
    reports = validate_site(SITE_ROOT)
    assert reports
    for report in reports:
        assert report.ok, [(i.location, i.message) for i in report.issues]
        assert report.front_matter.comments is True
