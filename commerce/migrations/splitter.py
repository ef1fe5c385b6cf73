"""
migrations/splitter.py
----------------------
Split an SQL script into individual statements.

A single left-to-right scan that tracks lexical state, so a semicolon only
terminates a statement when it appears in plain SQL:

    'single; quoted'        '' doubles a quote; E'..' also allows \\'
    "quoted; identifier"    "" doubles a quote
    $$dollar; quoted$$      also $tag$ ... $tag$ (PostgreSQL function bodies)
    -- line comments        stripped
    /* block comments */    stripped

Empty statements and statements consisting only of comments are dropped.
"""

import re
from typing import List

_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_IDENT_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_$")


def split_sql_statements(script: str) -> List[str]:
    statements: List[str] = []
    buffer: List[str] = []
    length = len(script)
    i = 0

    while i < length:
        ch = script[i]
        nxt = script[i + 1] if i + 1 < length else ""

        if ch == "-" and nxt == "-":
            end = script.find("\n", i)
            i = length if end == -1 else end
            continue

        if ch == "/" and nxt == "*":
            end = script.find("*/", i + 2)
            i = length if end == -1 else end + 2
            buffer.append(" ")
            continue

        if ch == "'":
            escaped = i > 0 and script[i - 1] in "eE" and (
                i < 2 or script[i - 2] not in _IDENT_CHARS
            )
            end = _scan_quoted(script, i, "'", backslash_escapes=escaped)
            buffer.append(script[i:end])
            i = end
            continue

        if ch == '"':
            end = _scan_quoted(script, i, '"', backslash_escapes=False)
            buffer.append(script[i:end])
            i = end
            continue

        if ch == "$" and (i == 0 or script[i - 1] not in _IDENT_CHARS):
            match = _DOLLAR_TAG_RE.match(script, i)
            if match is not None:
                tag = match.group(0)
                close = script.find(tag, match.end())
                end = length if close == -1 else close + len(tag)
                buffer.append(script[i:end])
                i = end
                continue

        if ch == ";":
            _flush(buffer, statements)
            i += 1
            continue

        buffer.append(ch)
        i += 1

    _flush(buffer, statements)
    return statements


def _scan_quoted(script: str, start: int, quote: str, backslash_escapes: bool) -> int:
    """Return the index just past the literal opening at start (or len(script))."""
    length = len(script)
    i = start + 1
    while i < length:
        ch = script[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < length and script[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return length


def _flush(buffer: List[str], statements: List[str]) -> None:
    statement = "".join(buffer).strip()
    buffer.clear()
    if statement:
        statements.append(statement)
