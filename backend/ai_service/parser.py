"""
Parser for the semi-structured text returned by the vision model.

The model is asked to answer in three labelled sections:

    **图片描述：**
    <description>

    **诗歌：**
    <title>
    <poem lines>

    **分析：**
    <analysis>

Model output is free-form, so every section is optional. Extraction is a
plain left-to-right marker search; anything not found falls back to a canned
default. `parse_poetry_result` never raises.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

DEFAULT_DESCRIPTION = "这是一张美丽的图片，展现了丰富的视觉内容。"
DEFAULT_ANALYSIS = "图片分析：色彩丰富，构图和谐，具有很强的艺术感染力。"

# First poem line longer than this is treated as verse, not a title
MAX_TITLE_LENGTH = 30

# Accepted spellings for each section marker, longest first
DESCRIPTION_MARKERS = ("**图片描述：**", "**图片描述:**", "图片描述：", "图片描述:")
POEM_MARKERS = ("**诗歌：**", "**诗歌:**", "诗歌：", "诗歌:")
ANALYSIS_MARKERS = ("**分析：**", "**分析:**", "分析：", "分析:")

TITLE_PREFIXES = ("标题：", "标题:", "题目：", "题目:", "**标题：**", "**标题:**")


@dataclass
class ParsedPoetry:
    description: str = DEFAULT_DESCRIPTION
    poetry: List[str] = field(default_factory=list)
    title: Optional[str] = None
    analysis: str = DEFAULT_ANALYSIS


def _non_empty_lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def _find_marker(text: str, markers: Tuple[str, ...]) -> Optional[Tuple[int, int]]:
    """
    Return (start, end) of the leftmost occurrence of any marker spelling.

    Bare markers ("诗歌：") only count at the start of a line so that ordinary
    prose mentioning the word is not mistaken for a section header.
    """
    best = None
    for marker in markers:
        bold = marker.startswith("**")
        pos = text.find(marker)
        while pos != -1 and not bold and pos > 0 and text[pos - 1] not in "\n\r":
            pos = text.find(marker, pos + 1)
        if pos == -1:
            continue
        span = (pos, pos + len(marker))
        # Earliest start wins; on a tie the longer spelling wins
        if best is None or span[0] < best[0] or (span[0] == best[0] and span[1] > best[1]):
            best = span
    return best


def _section(text: str, span: Optional[Tuple[int, int]], others: List[Optional[Tuple[int, int]]]) -> Optional[str]:
    """Text between a marker and the nearest following marker (or end of input)."""
    if span is None:
        return None
    end = len(text)
    for other in others:
        if other is not None and other[0] >= span[1] and other[0] < end:
            end = other[0]
    return text[span[1]:end].strip()


def _strip_title(line: str) -> Optional[str]:
    """Return the title if the line is an explicit title line, else None."""
    for prefix in TITLE_PREFIXES:
        if line.startswith(prefix):
            return line[len(prefix):].strip("* ").strip() or None
    if line.startswith("《") and line.endswith("》") and len(line) > 2:
        return line[1:-1].strip() or None
    return None


def _split_title(poem_text: str) -> Tuple[Optional[str], List[str]]:
    """
    Separate the title from the poem body.

    1. An explicit title line (标题：X, 题目：X or 《X》) anywhere in the section.
    2. Otherwise the first line, when it is short and more lines follow.
    3. Otherwise no title.
    """
    lines = _non_empty_lines(poem_text)
    for index, line in enumerate(lines):
        title = _strip_title(line)
        if title:
            return title, lines[:index] + lines[index + 1:]

    if len(lines) >= 2 and len(lines[0]) <= MAX_TITLE_LENGTH:
        return lines[0].strip("*# ").strip() or lines[0], lines[1:]

    return None, lines


def parse_poetry_result(result: str) -> ParsedPoetry:
    """
    Turn raw model output into description, poem lines, title and analysis.

    Args:
        result (str): The text returned by the model.

    Returns:
        ParsedPoetry: Always populated; missing sections use the defaults.
    """
    if not isinstance(result, str):
        result = "" if result is None else str(result)

    try:
        desc_span = _find_marker(result, DESCRIPTION_MARKERS)
        poem_span = _find_marker(result, POEM_MARKERS)
        analysis_span = _find_marker(result, ANALYSIS_MARKERS)

        description = _section(result, desc_span, [poem_span, analysis_span])
        poem_text = _section(result, poem_span, [desc_span, analysis_span])
        analysis = _section(result, analysis_span, [desc_span, poem_span])

        if poem_text is None:
            title, lines = None, _non_empty_lines(result)
        else:
            title, lines = _split_title(poem_text)

        parsed = ParsedPoetry(
            description=description or DEFAULT_DESCRIPTION,
            poetry=lines,
            title=title,
            analysis=analysis or DEFAULT_ANALYSIS,
        )
    except Exception as e:
        logging.warning(f"Failed to parse poetry result, using raw text: {e}")
        parsed = ParsedPoetry(poetry=_non_empty_lines(result))

    logging.info(
        f"Parsed poetry result: title={parsed.title!r}, lines={len(parsed.poetry)}, "
        f"has_description={parsed.description != DEFAULT_DESCRIPTION}"
    )
    return parsed
