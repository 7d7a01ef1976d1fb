#!/usr/bin/env python3
"""Comment syntax registry.

Maps a file extension (or a few well-known extension-less file names) to the
comment syntax used to recognize conclaude-uneditable markers. A file whose
language is not listed here has no protected ranges.
"""

from dataclasses import dataclass
from pathlib import PurePath


@dataclass(frozen=True)
class CommentSyntax:
    """Line and block comment delimiters of one language.

    line_prefix is None for languages that only have block comments
    (CSS, HTML and friends).
    """

    line_prefix: str | None
    block_start: str | None = None
    block_end: str | None = None

    @property
    def has_block(self) -> bool:
        return bool(self.block_start and self.block_end)


C_STYLE = CommentSyntax("//", "/*", "*/")
HASH = CommentSyntax("#")
HASH_WITH_C_BLOCK = CommentSyntax("#", "/*", "*/")
DOUBLE_DASH = CommentSyntax("--")
SQL = CommentSyntax("--", "/*", "*/")
LUA = CommentSyntax("--", "--[[", "]]")
HASKELL = CommentSyntax("--", "{-", "-}")
RUBY = CommentSyntax("#", "=begin", "=end")
PERL = CommentSyntax("#", "=pod", "=cut")
POWERSHELL = CommentSyntax("#", "<#", "#>")
MARKUP = CommentSyntax(None, "<!--", "-->")
CSS = CommentSyntax(None, "/*", "*/")
SEMICOLON = CommentSyntax(";")
PERCENT = CommentSyntax("%")
OCAML = CommentSyntax(None, "(*", "*)")
VIM = CommentSyntax('"')
BATCH = CommentSyntax("REM")
JINJA = CommentSyntax(None, "{#", "#}")

_EXTENSIONS: dict[str, CommentSyntax] = {
    # C family and friends
    "c": C_STYLE,
    "h": C_STYLE,
    "cc": C_STYLE,
    "cpp": C_STYLE,
    "cxx": C_STYLE,
    "hpp": C_STYLE,
    "hh": C_STYLE,
    "m": C_STYLE,
    "mm": C_STYLE,
    "cs": C_STYLE,
    "java": C_STYLE,
    "kt": C_STYLE,
    "kts": C_STYLE,
    "scala": C_STYLE,
    "groovy": C_STYLE,
    "gradle": C_STYLE,
    "swift": C_STYLE,
    "go": C_STYLE,
    "rs": C_STYLE,
    "dart": C_STYLE,
    "zig": C_STYLE,
    "sol": C_STYLE,
    "proto": C_STYLE,
    # JavaScript / TypeScript
    "js": C_STYLE,
    "jsx": C_STYLE,
    "mjs": C_STYLE,
    "cjs": C_STYLE,
    "ts": C_STYLE,
    "tsx": C_STYLE,
    "mts": C_STYLE,
    "cts": C_STYLE,
    "jsonc": C_STYLE,
    "json5": C_STYLE,
    # Stylesheets
    "css": CSS,
    "scss": C_STYLE,
    "sass": C_STYLE,
    "less": C_STYLE,
    # Hash-comment languages
    "py": HASH,
    "pyi": HASH,
    "pyx": HASH,
    "sh": HASH,
    "bash": HASH,
    "zsh": HASH,
    "fish": HASH,
    "r": HASH,
    "jl": HASH,
    "ex": HASH,
    "exs": HASH,
    "cr": HASH,
    "nim": HASH,
    "tf": HASH_WITH_C_BLOCK,
    "hcl": HASH_WITH_C_BLOCK,
    "php": C_STYLE,
    "nix": HASH_WITH_C_BLOCK,
    "yaml": HASH,
    "yml": HASH,
    "toml": HASH,
    "ini": SEMICOLON,
    "cfg": HASH,
    "conf": HASH,
    "mk": HASH,
    "cmake": HASH,
    "dockerfile": HASH,
    "rb": RUBY,
    "rake": RUBY,
    "pl": PERL,
    "pm": PERL,
    "ps1": POWERSHELL,
    "psm1": POWERSHELL,
    # Double-dash languages
    "sql": SQL,
    "lua": LUA,
    "hs": HASKELL,
    "elm": HASKELL,
    "ada": DOUBLE_DASH,
    "adb": DOUBLE_DASH,
    "ads": DOUBLE_DASH,
    # Markup
    "html": MARKUP,
    "htm": MARKUP,
    "xml": MARKUP,
    "xhtml": MARKUP,
    "svg": MARKUP,
    "md": MARKUP,
    "markdown": MARKUP,
    "vue": MARKUP,
    "svelte": MARKUP,
    "astro": MARKUP,
    "jinja": JINJA,
    "j2": JINJA,
    # Lisps and others
    "clj": SEMICOLON,
    "cljs": SEMICOLON,
    "cljc": SEMICOLON,
    "edn": SEMICOLON,
    "lisp": SEMICOLON,
    "el": SEMICOLON,
    "scm": SEMICOLON,
    "asm": SEMICOLON,
    "erl": PERCENT,
    "hrl": PERCENT,
    "tex": PERCENT,
    "ml": OCAML,
    "mli": OCAML,
    "fs": CommentSyntax("//", "(*", "*)"),
    "fsx": CommentSyntax("//", "(*", "*)"),
    "vim": VIM,
    "bat": BATCH,
    "cmd": BATCH,
}

_FILE_NAMES: dict[str, CommentSyntax] = {
    "Dockerfile": HASH,
    "Containerfile": HASH,
    "Makefile": HASH,
    "GNUmakefile": HASH,
    "Rakefile": RUBY,
    "Gemfile": RUBY,
    "Justfile": HASH,
    "justfile": HASH,
    "CMakeLists.txt": HASH,
}


def lookup_comment_syntax(file_path: str) -> CommentSyntax | None:
    """Comment syntax for a file, or None if its language is unsupported.

    Extension lookup is case-insensitive; well-known file names are
    checked first.
    """
    path = PurePath(file_path.replace("\\", "/"))
    by_name = _FILE_NAMES.get(path.name)
    if by_name is not None:
        return by_name
    suffix = path.suffix.lower().lstrip(".")
    if not suffix:
        return None
    return _EXTENSIONS.get(suffix)


def supported_extensions() -> list[str]:
    """All registered extensions, sorted."""
    return sorted(_EXTENSIONS)
