#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Markdown image stacker (single file, works out of the box)

Overview:
- Stack: merge consecutive lines that each hold exactly one embedded image
  into a single line, references space-separated in their original order
- Unstack: split such a merged line back into one reference per line, every
  reference re-prefixed with the line's indentation
- Two reference syntaxes are recognised: Obsidian embeds ![[name.png]] (with an
  optional |300 size hint) and inline Markdown images ![alt](url)
- The clicked/hovered image is identified by its rendered locator: remote URLs,
  data:image/ payloads, app:// asset URIs, excalidraw embeds and plain paths
- A leading YAML front matter block is never touched
- Lenient mode lets a block absorb blank or punctuation-only separator lines

Usage examples:
1) Stack the block that contains cat.png (file is rewritten):
   python tool/md_image_stacker.py notes/trip.md --mode stack --src "app://local/vault/img/cat.png?1699"

2) Preview the unstacked result of a merged line without writing:
   python tool/md_image_stacker.py notes/trip.md --mode unstack --src cat.png --dry-run

3) List every image line of a document:
   python tool/md_image_stacker.py notes/trip.md --mode list

4) Search a whole folder of open notes for the document that owns an image:
   python tool/md_image_stacker.py notes/ --mode stack --src https://example.com/a.png --lenient --backup
"""

from __future__ import annotations

import argparse
import enum
import os
import re
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

try:
    sys.stdout.reconfigure(encoding="utf-8")
except Exception:
    pass

# -----------------------------
# Errors
# -----------------------------

class StackerError(RuntimeError):
    """Base class for failures that must leave the document untouched."""


class UnresolvableReferenceError(StackerError):
    """The image locator cannot be turned into a search key."""


class NoOwningDocumentError(StackerError):
    """None of the candidate documents contains the image."""


# -----------------------------
# Patterns
# -----------------------------

WIKI_EMBED_LINE_RE = re.compile(r"^!\[\[[^\]]+\]\](\|\d+)?\s*$")
MD_IMAGE_LINE_RE = re.compile(r"^!\[[^\]]*]\([^)]+\)\s*$")

# Same two syntaxes, unanchored, for scanning a merged line
WIKI_EMBED_TOKEN_RE = re.compile(r"!\[\[[^\]]+\]\](?:\|\d+)?")
MD_IMAGE_TOKEN_RE = re.compile(r"!\[[^\]]*]\([^)]+\)")

FRONTMATTER_RE = re.compile(r"^\s*---\s*([\s\S]*?)\s*---\n*")
LINE_BREAK_RE = re.compile(r"\r?\n")
EXCALIDRAW_CLASS_RE = re.compile(r"excalidraw-svg.*")

MARKDOWN_SUFFIXES = {".md", ".markdown"}
BACKUP_SUFFIX = ".bak"
DEFAULT_MAX_RETRIES = 3

# -----------------------------
# Data types
# -----------------------------

class LocatorScheme(enum.Enum):
    REMOTE = "remote"          # http / https
    DATA = "data"              # data:image/...;base64 (e.g. PDF++ renders)
    EXCALIDRAW = "excalidraw"  # real reference lives in the filesource attribute
    APP = "app"                # app://<host>/<path>?<query> resolved vault asset
    PLAIN = "plain"            # bare relative path


@dataclass
class ImageTarget:
    """Descriptor of the image the user pointed at."""
    src: str
    classes: List[str] = field(default_factory=list)
    filesource: Optional[str] = None
    parent_src: Optional[str] = None
    indent: Optional[str] = None


@dataclass
class BlockSpan:
    start: int  # inclusive
    end: int    # inclusive


@dataclass
class ImageLine:
    index: int              # 0-based line number inside the full document
    text: str
    indent: str
    references: List[str]

    @property
    def stacked(self) -> bool:
        return len(self.references) > 1


@dataclass
class Config:
    mode: str                          # stack / unstack / list
    lenient: bool = False
    backup: bool = False
    dry_run: bool = False
    verbose: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    progress_cb: Optional[Callable[[str], None]] = None

    def log(self, message: str) -> None:
        if self.progress_cb:
            self.progress_cb(message)


# -----------------------------
# Line classification
# -----------------------------

def is_wiki_embed(s: str) -> bool:
    return WIKI_EMBED_LINE_RE.match(s) is not None


def is_markdown_image(s: str) -> bool:
    return MD_IMAGE_LINE_RE.match(s) is not None


def is_image_line(line: str) -> bool:
    """A line qualifies only when it is nothing but a single image reference."""
    trimmed = line.strip()
    return is_wiki_embed(trimmed) or is_markdown_image(trimmed)


def is_ignorable_line(line: str) -> bool:
    """Blank or punctuation-only lines (---, *, ·) separate images in lenient mode."""
    return not any(ch.isalnum() for ch in line.strip())


def leading_indent(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def split_lines(body: str) -> List[str]:
    return LINE_BREAK_RE.split(body)


# -----------------------------
# Front matter
# -----------------------------

def split_frontmatter(text: str) -> Tuple[str, str]:
    m = FRONTMATTER_RE.match(text)
    if not m:
        return "", text
    frontmatter = m.group(0)
    return frontmatter, text[len(frontmatter):]


def apply_to_body(text: str, fn: Callable[[str], str]) -> str:
    frontmatter, body = split_frontmatter(text)
    new_body = fn(body)
    if new_body == body:
        return text
    return frontmatter + new_body


# -----------------------------
# Locator resolution
# -----------------------------

def classify_locator(target: ImageTarget) -> LocatorScheme:
    src = target.src or ""
    if "http" in src:
        return LocatorScheme.REMOTE
    if src.startswith("data:image/"):
        return LocatorScheme.DATA
    if any(EXCALIDRAW_CLASS_RE.search(cls) for cls in target.classes or []):
        return LocatorScheme.EXCALIDRAW
    if "app://" in src:
        return LocatorScheme.APP
    if src.strip():
        return LocatorScheme.PLAIN
    raise UnresolvableReferenceError("Image locator is empty")


def local_name_from_app_uri(uri: str) -> str:
    """
    app://<host>/<path>/<name>?<query> -> <name> (URL-decoded).
    Obsidian appends a cache-busting query (?1699...), which is dropped here.
    """
    path = urlparse(uri).path or ""
    name = unquote(path).rstrip("/").rsplit("/", 1)[-1]
    if not name:
        raise UnresolvableReferenceError(f"No file name in asset URI: {uri}")
    return name


def excalidraw_name(target: ImageTarget) -> str:
    src = target.filesource
    if not src:
        raise UnresolvableReferenceError("Excalidraw embed has no filesource attribute")
    # drop ".md" and keep the last path segment
    name = src[:-3]
    return name[name.rfind("/") + 1:]


def _locator_key(target: ImageTarget) -> str:
    return target.src


def _app_key(target: ImageTarget) -> str:
    return local_name_from_app_uri(target.src)


SEARCH_KEY_RESOLVERS: Dict[LocatorScheme, Callable[[ImageTarget], str]] = {
    LocatorScheme.REMOTE: _locator_key,
    LocatorScheme.DATA: _locator_key,
    LocatorScheme.EXCALIDRAW: excalidraw_name,
    LocatorScheme.APP: _app_key,
    LocatorScheme.PLAIN: _locator_key,
}


def search_key_for_target(target: ImageTarget) -> str:
    key = SEARCH_KEY_RESOLVERS[classify_locator(target)](target)
    if not key:
        raise UnresolvableReferenceError(f"Cannot derive a search key for: {target.src!r}")
    return key


def _data_local_name(target: ImageTarget) -> str:
    if not target.parent_src:
        raise UnresolvableReferenceError("Inline data image has no parent src to name it")
    return local_name_from_app_uri(target.parent_src)


def _not_local(target: ImageTarget) -> str:
    raise UnresolvableReferenceError(f"Image is not zoomable: {target.src!r}")


LOCAL_NAME_RESOLVERS: Dict[LocatorScheme, Callable[[ImageTarget], str]] = {
    LocatorScheme.REMOTE: _locator_key,
    LocatorScheme.DATA: _data_local_name,
    LocatorScheme.EXCALIDRAW: excalidraw_name,
    LocatorScheme.APP: _app_key,
    LocatorScheme.PLAIN: _not_local,
}


def local_image_name_for_target(target: ImageTarget) -> str:
    """Name under which the image is written in the note (size-hint edits key on it)."""
    return LOCAL_NAME_RESOLVERS[classify_locator(target)](target)


# -----------------------------
# Block location
# -----------------------------

def find_target_line(lines: Sequence[str], key: str) -> Optional[int]:
    for i, line in enumerate(lines):
        if key in line and is_image_line(line):
            return i
    return None


def locate_block(lines: Sequence[str], key: str, lenient: bool = False) -> Optional[BlockSpan]:
    index = find_target_line(lines, key)
    if index is None:
        return None

    def qualifies(line: str) -> bool:
        return is_image_line(line) or (lenient and is_ignorable_line(line))

    start = end = index
    while start > 0 and qualifies(lines[start - 1]):
        start -= 1
    while end < len(lines) - 1 and qualifies(lines[end + 1]):
        end += 1
    return BlockSpan(start, end)


# -----------------------------
# Stack / unstack
# -----------------------------

def stack_body(body: str, key: str, lenient: bool = False) -> str:
    lines = split_lines(body)
    span = locate_block(lines, key, lenient=lenient)
    if span is None:
        return body
    images = [
        lines[i].strip()
        for i in range(span.start, span.end + 1)
        if lines[i].strip() and is_image_line(lines[i])
    ]
    lines[span.start:span.end + 1] = [" ".join(images)]
    return "\n".join(lines)


def split_references(line: str) -> List[str]:
    """
    Scan a merged line into its references, left to right.
    Returns [] when anything other than references and whitespace is present.
    """
    s = line.strip()
    refs: List[str] = []
    pos = 0
    while pos < len(s):
        if s[pos].isspace():
            pos += 1
            continue
        m = WIKI_EMBED_TOKEN_RE.match(s, pos) or MD_IMAGE_TOKEN_RE.match(s, pos)
        if not m:
            return []
        refs.append(m.group(0))
        pos = m.end()
        if pos < len(s) and not s[pos].isspace():
            return []
    return refs


def unstack_line(line: str, indent: str = "") -> List[str]:
    return [indent + ref for ref in split_references(line)]


def find_stacked_line(lines: Sequence[str], key: str) -> Optional[int]:
    for i, line in enumerate(lines):
        if key in line and split_references(line):
            return i
    return None


def unstack_body(body: str, key: str, indent: Optional[str] = None) -> str:
    lines = split_lines(body)
    index = find_stacked_line(lines, key)
    if index is None:
        return body
    line = lines[index]
    prefix = leading_indent(line) if indent is None else indent
    lines[index:index + 1] = unstack_line(line, prefix)
    return "\n".join(lines)


def stack_images(text: str, target: ImageTarget, lenient: bool = False) -> str:
    key = search_key_for_target(target)
    return apply_to_body(text, lambda body: stack_body(body, key, lenient=lenient))


def unstack_images(text: str, target: ImageTarget) -> str:
    key = search_key_for_target(target)
    return apply_to_body(text, lambda body: unstack_body(body, key, indent=target.indent))


def collect_image_lines(text: str) -> List[ImageLine]:
    frontmatter, body = split_frontmatter(text)
    offset = len(split_lines(frontmatter)) - 1 if frontmatter else 0
    found: List[ImageLine] = []
    for i, line in enumerate(split_lines(body)):
        refs = split_references(line)
        if refs:
            found.append(ImageLine(i + offset, line, leading_indent(line), refs))
    return found


def reference_locator(reference: str) -> str:
    """![[a.png|300]] -> a.png, ![alt](url) -> url"""
    if reference.startswith("![["):
        return reference[3:reference.index("]]")].split("|", 1)[0]
    return reference[reference.index("](") + 2:-1]


def reference_rows(text: str) -> List[Tuple[str, str]]:
    """(label, locator) per image reference, in document order."""
    rows: List[Tuple[str, str]] = []
    for item in collect_image_lines(text):
        mark = "≡" if item.stacked else "•"
        for ref in item.references:
            locator = reference_locator(ref)
            rows.append((f"L{item.index + 1:<5} {mark} {locator}", locator))
    return rows


# -----------------------------
# Document store
# -----------------------------

def read_text(path: Path) -> str:
    encodings = ["utf-8", "utf-16", "gb18030"]
    for enc in encodings:
        try:
            return path.read_text(encoding=enc)
        except UnicodeDecodeError:
            continue
        except OSError:
            break
    return path.read_text(encoding="utf-8", errors="ignore")


def write_text_utf8(path: Path, text: str) -> None:
    path.write_text(text, encoding="utf-8", newline="\n")


class DocumentStore:
    """
    Read-modify-write over local Markdown files.

    `process` hands the current text to a pure function and persists the
    result. Writers on the same path are serialised; if the file changed on
    disk while the function ran, the function is re-applied to the fresh text.
    """

    def __init__(self, backup: bool = False, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self.backup = backup
        self.max_retries = max(0, max_retries)
        self._locks: Dict[Path, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(path, threading.Lock())

    @staticmethod
    def _snapshot(path: Path) -> Tuple[int, str]:
        return path.stat().st_mtime_ns, read_text(path)

    def read(self, path: Path) -> str:
        return read_text(path)

    def process(
        self,
        path: Path,
        fn: Callable[[str], str],
        backup: Optional[bool] = None,
        max_retries: Optional[int] = None,
    ) -> bool:
        """Returns True when the file was rewritten. `backup` and `max_retries` override the store defaults."""
        path = Path(path)
        backup = self.backup if backup is None else backup
        retries = self.max_retries if max_retries is None else max(0, max_retries)
        with self._lock_for(path.resolve()):
            for _ in range(retries + 1):
                stamp, text = self._snapshot(path)
                new_text = fn(text)
                if new_text == text:
                    return False
                if self._snapshot(path) != (stamp, text):
                    continue
                if backup:
                    write_text_utf8(path.with_suffix(path.suffix + BACKUP_SUFFIX), text)
                write_text_utf8(path, new_text)
                return True
        raise StackerError(f"{path.name} kept changing while it was being edited")


# -----------------------------
# Reference locator
# -----------------------------

def iter_markdown_files(root: Path) -> List[Path]:
    if root.is_file():
        return [root]
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in MARKDOWN_SUFFIXES)


def find_document_for_target(paths: Iterable[Path], target: ImageTarget) -> Path:
    """First document whose body holds the image as a stackable or stacked line."""
    key = search_key_for_target(target)
    for path in paths:
        _, body = split_frontmatter(read_text(path))
        lines = split_lines(body)
        if find_target_line(lines, key) is not None or find_stacked_line(lines, key) is not None:
            return path
    raise NoOwningDocumentError(f"No file belonging to the image found: {key}")


# -----------------------------
# Main flow
# -----------------------------

def transform_for(cfg: Config, target: ImageTarget) -> Callable[[str], str]:
    if cfg.mode == "stack":
        return lambda text: stack_images(text, target, lenient=cfg.lenient)
    if cfg.mode == "unstack":
        return lambda text: unstack_images(text, target)
    raise ValueError(f"Unsupported mode: {cfg.mode}")


def process_document(md_path: Path, target: ImageTarget, cfg: Config, store: Optional[DocumentStore] = None) -> Dict:
    store = store or DocumentStore(backup=cfg.backup, max_retries=cfg.max_retries)
    fn = transform_for(cfg, target)
    cfg.log(f"{cfg.mode}: {md_path.name} <- {search_key_for_target(target)}")
    if cfg.dry_run:
        text = store.read(md_path)
        new_text = fn(text)
        return {"document": str(md_path), "updated": False, "changed": new_text != text, "text": new_text}
    changed = store.process(md_path, fn, backup=cfg.backup, max_retries=cfg.max_retries)
    cfg.log(f"{'updated' if changed else 'no matching image block in'} {md_path.name}")
    return {"document": str(md_path), "updated": changed, "changed": changed}


def getenv_default(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v else default


def getenv_flag(name: str) -> bool:
    return (getenv_default(name, "") or "").strip().lower() in ("1", "true", "yes", "on")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Stack consecutive Markdown image lines into one line, or unstack them again.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("path", type=Path, nargs="?", help="Markdown file, or a folder of open notes to search")
    p.add_argument("--mode", choices=["stack", "unstack", "list"], default="stack", help="Operation")
    p.add_argument("--src", default=None, help="Rendered image locator (src attribute)")
    p.add_argument("--class", dest="classes", action="append", default=[], help="CSS class of the image element (repeatable)")
    p.add_argument("--filesource", default=None, help="filesource attribute of an excalidraw embed")
    p.add_argument("--parent-src", default=None, help="src of the enclosing element (inline data images)")
    p.add_argument("--indent", default=None, help="Indentation for unstacked lines (defaults to the merged line's own)")
    p.add_argument("--lenient", action="store_true", default=getenv_flag("MD_IMAGE_STACKER_LENIENT"), help="Let blank/punctuation-only lines join a block (env MD_IMAGE_STACKER_LENIENT)")
    p.add_argument("--backup", action="store_true", default=getenv_flag("MD_IMAGE_STACKER_BACKUP"), help="Keep a .bak copy before rewriting (env MD_IMAGE_STACKER_BACKUP)")
    p.add_argument("--dry-run", action="store_true", help="Print the result instead of writing")
    p.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES, help="Re-apply attempts when the file changes during an edit")
    p.add_argument("--verbose", action="store_true", help="Verbose log")
    p.add_argument("--gui", action="store_true", help="Open the desktop window")
    return p


def print_image_lines(md_path: Path) -> None:
    items = collect_image_lines(read_text(md_path))
    print(f"🖼️ {md_path.name}: {len(items)} image line(s)")
    for item in items:
        mark = "≡" if item.stacked else "•"
        print(f"  {mark} L{item.index + 1}: {' '.join(reference_locator(r) for r in item.references)}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.gui:
        from md_image_stacker_gui import run_app
        run_app(args.path)
        return 0

    if args.path is None or not args.path.exists():
        print(f"❌ File not found: {args.path}")
        return 1

    if args.mode == "list":
        for md_path in iter_markdown_files(args.path):
            print_image_lines(md_path)
        return 0

    if not args.src:
        print("❌ --src is required for stack/unstack")
        return 1

    cfg = Config(
        mode=args.mode,
        lenient=bool(args.lenient),
        backup=bool(args.backup),
        dry_run=bool(args.dry_run),
        verbose=bool(args.verbose),
        max_retries=args.max_retries,
        progress_cb=print if args.verbose else None,
    )
    target = ImageTarget(
        src=args.src,
        classes=list(args.classes or []),
        filesource=args.filesource,
        parent_src=args.parent_src,
        indent=args.indent,
    )

    try:
        md_path = find_document_for_target(iter_markdown_files(args.path), target)
        result = process_document(md_path, target, cfg)
    except StackerError as e:
        print(f"❌ {e}")
        return 2
    except OSError as e:
        print(f"❌ Cannot access {e.filename or args.path}: {e.strerror or e}")
        return 2

    if cfg.dry_run:
        sys.stdout.write(result["text"])
        return 0
    if result["updated"]:
        print(f"✅ {args.mode}: {md_path}")
    else:
        print(f"ℹ️ No image block to {args.mode} in {md_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
