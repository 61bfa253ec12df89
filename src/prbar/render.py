"""Menu text for SwiftBar/xbar, also consumed by the rumps host app.

The menu is first built as a list of :class:`MenuLine` values, then
serialized one line per entry in the plugin text protocol
(``text | key=value ...``, nesting expressed with leading ``--``).
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import quote

from prbar.cache import PRKey, format_pr_key
from prbar.config import Config
from prbar.snapshot import BuildResult, SectionResult, SectionRow, repo_qualifier

logger = logging.getLogger(__name__)

MENU_ICON = "🔀"
ERROR_TITLE = f"{MENU_ICON} ❌"
NO_AVATAR_IMAGE = "person.crop.circle"

# Marks shown before the title, in this order.
PREFIX_MARKS = ("not_participated", "approved_by_me", "approval_dismissed")
# Marks appended after the counts, in this order.
SUFFIX_MARKS = ("changes_requested", "unread", "rerequested")

AvatarLookup = Callable[[str, str], str]


@dataclass
class MenuLine:
    """One menu entry.

    Attributes:
        text: Visible label.
        depth: 0 for top level, 1 for entries inside a section submenu.
        params: Plugin protocol parameters (href, color, image, ...).
        url: Page opened on click, if any.
        ack: PR whose re-request mark is cleared on click.
        separator: Draw a separator instead of a label.
    """

    text: str = ""
    depth: int = 0
    params: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    ack: PRKey | None = None
    separator: bool = False

    def to_text(self) -> str:
        if self.separator:
            return "---" if self.depth == 0 else "--" * self.depth + "---"
        prefix = "-- " * self.depth if self.depth else ""
        line = f"{prefix}{self.text}"
        if self.params:
            line += " | " + " ".join(f"{key}={value}" for key, value in self.params.items())
        return line


def search_url(query: str) -> str:
    return f"https://github.com/search?q={quote(query)}&type=pullrequests"


def repo_header_url(repo: str, query: str, link_kind: str) -> str:
    if link_kind == "search":
        return search_url(f"{query} repo:{repo}")
    return f"https://github.com/{repo}/pulls?q={quote(query)}"


def clean_title(title: str) -> str:
    """Flatten a title so it can't break the line protocol."""
    return " ".join(title.split()).replace("|", "¦")


def pr_label(row: SectionRow, marks: dict[str, str]) -> str:
    """Build the decorated label of a PR line."""
    decorations = row.decorations
    label = clean_title(row.record.title)

    if "draft" in decorations:
        label = f"{marks.get('draft', '')} DRAFT {label}".lstrip()
    elif "queue" in decorations:
        label = f"{marks.get('queue', '')} QUEUED {label}".lstrip()
    elif "queue_left" in decorations and marks.get("queue_left"):
        label = f"{marks['queue_left']} {label}"

    for name in PREFIX_MARKS:
        if name in decorations and marks.get(name):
            label = f"{marks[name]} {label}"

    suffix = ""
    if row.record.conversation_count > 0:
        suffix += f"  {marks.get('comment', '')}{row.record.conversation_count}"
    if row.enrichment.approval_count > 0:
        suffix += f"  {marks.get('approval', '')}{row.enrichment.approval_count}"
    for name in SUFFIX_MARKS:
        if name in decorations and marks.get(name):
            suffix += f"  {marks[name]}"
    return label + suffix


def header_params(url: str, style: dict[str, str]) -> dict[str, str]:
    params = {"href": url}
    for key in ("color", "font", "size"):
        if style.get(key):
            params[key] = style[key]
    return params


class MenuRenderer:
    """Turns collated sections into menu lines."""

    def __init__(
        self,
        config: Config,
        avatars: AvatarLookup | None = None,
        ack_command: str | None = None,
    ) -> None:
        """Initialize the renderer.

        Args:
            config: Marks, header style and repo allowlist.
            avatars: Callable (login, avatar_url) -> base64 image, or None to
                skip images.
            ack_command: Executable invoked with ``--ack owner/repo#N`` when a
                re-requested PR is clicked.
        """
        self._config = config
        self._avatars = avatars
        self._ack_command = ack_command

    def _images(self, rows: list[SectionRow]) -> dict[str, str]:
        if self._avatars is None:
            return {}
        logins = {}
        for row in rows:
            logins.setdefault(row.entry.author, row.entry.avatar_url)
        with ThreadPoolExecutor(max_workers=self._config.concurrency) as pool:
            images = list(pool.map(lambda item: self._avatars(*item), logins.items()))
        return dict(zip(logins, images))

    def _pr_line(self, row: SectionRow, image: str) -> MenuLine:
        line = MenuLine(
            text=pr_label(row, self._config.marks),
            depth=1,
            url=row.record.url,
        )
        if "rerequested" in row.decorations and self._ack_command:
            line.ack = row.record.key
            line.params.update(
                {
                    "bash": self._ack_command,
                    "param1": "--ack",
                    "param2": format_pr_key(row.record.key),
                    "terminal": "false",
                    "refresh": "true",
                }
            )
        else:
            line.params["href"] = row.record.url
        if image:
            line.params["image"] = image
        else:
            line.params["sfimage"] = NO_AVATAR_IMAGE
        return line

    def section_lines(self, result: SectionResult, images: dict[str, str]) -> list[MenuLine]:
        """Render one section: its header, then repo groups in row order."""
        section = result.section
        repo_q = repo_qualifier(self._config.watched_repos)
        lines = [
            MenuLine(
                text=f"{section.title}: {result.count}",
                url=search_url(section.header_query + repo_q),
                params={"href": search_url(section.header_query + repo_q)},
            )
        ]

        by_repo: dict[str, list[SectionRow]] = {}
        for row in result.rows:
            by_repo.setdefault(row.record.repo, []).append(row)

        for index, (repo, rows) in enumerate(by_repo.items()):
            if index:
                lines.append(MenuLine(depth=1, separator=True))
            total = result.totals.get(repo, len(rows))
            count = f"{len(rows)} out of {total}" if total != len(rows) else str(len(rows))
            url = repo_header_url(repo, section.header_query, section.header_link_kind)
            lines.append(
                MenuLine(
                    text=f"{repo}: {count}",
                    depth=1,
                    url=url,
                    params=header_params(url, self._config.header_style),
                )
            )
            for row in rows:
                lines.append(self._pr_line(row, images.get(row.entry.author, "")))
        return lines

    def render(self, build: BuildResult) -> list[MenuLine]:
        """Render the whole menu, title line first."""
        rows = [row for result in build.sections for row in result.rows]
        images = self._images(rows)

        all_total = sum(
            sum(result.totals.values())
            for result in build.sections
            if result.section.group == "All"
        )
        lines = [MenuLine(text=f"{MENU_ICON} {all_total}"), MenuLine(separator=True)]

        current_group = None
        for result in build.sections:
            group = result.section.group
            if group != current_group:
                if group is not None:
                    lines.append(MenuLine(separator=True))
                    if group != "All":
                        lines.append(MenuLine(text=group))
                current_group = group
            lines.extend(self.section_lines(result, images))
        return lines


def format_menu(lines: list[MenuLine]) -> str:
    return "".join(f"{line.to_text()}\n" for line in lines)


def error_menu(message: str) -> list[MenuLine]:
    """Menu shown when the plugin can't run at all."""
    return [
        MenuLine(text=ERROR_TITLE),
        MenuLine(separator=True),
        MenuLine(text=clean_title(message)),
    ]


def empty_menu() -> list[MenuLine]:
    return [MenuLine(text=f"{MENU_ICON} 0"), MenuLine(separator=True)]
