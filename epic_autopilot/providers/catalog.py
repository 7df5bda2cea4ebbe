"""Work catalog backed by markdown epic files.

Backlog files live in one directory and are named ``epics.md``,
``epics-002.md``, ``@epics.md`` and so on. Each epic is declared by a
heading line::

    #### Epic 7A: Tenant onboarding
    #### Epic 10A-SSO: Single sign-on

Files are read in name order and ids in file order; a repeated id keeps its
first position.
"""

import re
from pathlib import Path

import aiofiles
import structlog

from epic_autopilot.providers.base import WorkCatalog

log = structlog.get_logger(__name__)

EPIC_HEADING = re.compile(r"^#### Epic ([^:]+):")


def _is_epic_file(name: str) -> bool:
    lowered = name.lower()
    return lowered.endswith(".md") and (lowered.startswith("epics") or lowered == "@epics.md")


class MarkdownEpicCatalog(WorkCatalog):
    """Read epic ids from ``epics*.md`` files in a backlog directory."""

    def __init__(self, backlog_dir: str | Path) -> None:
        self.backlog_dir = Path(backlog_dir)

    def catalog_files(self) -> list[Path]:
        if not self.backlog_dir.is_dir():
            return []
        files = [path for path in self.backlog_dir.iterdir() if path.is_file() and _is_epic_file(path.name)]
        return sorted(files, key=lambda p: p.name)

    async def list_candidates(self) -> list[str]:
        files = self.catalog_files()
        if not files:
            log.warning("catalog_empty", backlog_dir=str(self.backlog_dir))
            return []

        seen: dict[str, None] = {}
        for path in files:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            for line in content.splitlines():
                match = EPIC_HEADING.match(line)
                if not match:
                    continue
                item_id = match.group(1).strip()
                if not item_id:
                    continue
                if item_id in seen:
                    log.debug("catalog_duplicate_item", item=item_id, file=path.name)
                    continue
                seen[item_id] = None

        log.debug("catalog_loaded", files=[p.name for p in files], items=len(seen))
        return list(seen)
