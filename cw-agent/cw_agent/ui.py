"""
Shared terminal styling for the cw-agent CLI.
All commands render through these helpers so output looks the same everywhere.
"""
import os
import re

# ANSI escape codes
_RESET = "\033[0m"
_BOLD  = "\033[1m"

# Theme colors
_SUCCESS    = "\033[38;2;34;197;94m"    # Green
_WARNING    = "\033[38;2;245;158;11m"   # Amber
_ERROR      = "\033[38;2;239;68;68m"    # Red
_MUTED      = "\033[38;2;107;114;128m"  # Gray
_LIGHT      = "\033[38;2;249;250;251m"
_HEADER_BG  = "\033[48;2;14;165;233m"
_CODE_BG    = "\033[48;2;31;41;55m"

SUCCESS_PREFIX = "✓ "
ERROR_PREFIX   = "✗ "
WARNING_PREFIX = "! "
INFO_PREFIX    = "→ "

# Not shown in summaries, since nearly everyone uses it
DEFAULT_API_ENDPOINT = "https://api.certwatch.app"

LABEL_WIDTH = 14
SECTION_WIDTH = 40

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


def _color_enabled() -> bool:
    return "NO_COLOR" not in os.environ


def _style(text: str, *codes: str) -> str:
    if not _color_enabled() or not codes:
        return text
    return "".join(codes) + text + _RESET


def render_app_header() -> str:
    return _style("   CertWatch Agent   ", _BOLD, _LIGHT, _HEADER_BG)


def render_command_header(context: str) -> str:
    return _style(f"   CertWatch Agent - {context}   ", _BOLD, _LIGHT, _HEADER_BG)


def render_section(title: str) -> str:
    fill = max(SECTION_WIDTH - len(title), 0)
    return _style(f"─── {title} " + "─" * fill, _MUTED)


def render_success(msg: str) -> str:
    return _style(SUCCESS_PREFIX + msg, _BOLD, _SUCCESS)


def render_error(msg: str) -> str:
    return _style(ERROR_PREFIX + msg, _BOLD, _ERROR)


def render_warning(msg: str) -> str:
    return _style(WARNING_PREFIX + msg, _WARNING)


def render_info(msg: str) -> str:
    return _style(INFO_PREFIX + msg, _MUTED)


def render_code(code: str) -> str:
    return _style(f" {code} ", _LIGHT, _CODE_BG)


def render_key_value(label: str, value: str) -> str:
    return "  " + _style(label.ljust(LABEL_WIDTH), _MUTED) + value


def render_warning_box(title: str, lines: list[str]) -> str:
    """A rounded box with an amber border, title on top."""
    heading = WARNING_PREFIX + title
    body = [heading, ""] + lines
    # Width is measured on the plain text; render_code() lines may carry escape codes
    width = max(len(_strip_ansi(line)) for line in body) + 2
    edge = _WARNING

    out = [_style("╭" + "─" * (width + 2) + "╮", edge)]
    for i, line in enumerate(body):
        pad = " " * (width - len(_strip_ansi(line)))
        text = _style(line, _BOLD, _WARNING) if i == 0 else line
        out.append(_style("│ ", edge) + text + pad + _style(" │", edge))
    out.append(_style("╰" + "─" * (width + 2) + "╯", edge))
    return "\n".join(out)


def truncate_id(agent_id: str) -> str:
    """Shorten a UUID for display: first 12 characters + '...'."""
    if len(agent_id) > 12:
        return agent_id[:12] + "..."
    return agent_id


def _strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)
