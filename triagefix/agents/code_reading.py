from __future__ import annotations

import logging
import os
import posixpath
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import httpx

from triagefix.errors import GitHubApiError
from triagefix.gitops.github_rest import GitHubRestClient
from triagefix.gitops.retry import RetryPolicy, with_rate_limit_retry
from triagefix.models import (
    AgentContext,
    AgentResult,
    CodeReadingOutput,
    CustomCommand,
    Framework,
    PageObject,
    RelatedFile,
)

logger = logging.getLogger(__name__)


class SourceFetcher(Protocol):
    async def fetch_file(self, path: str) -> str:
        """Return the file text, or "" when it cannot be fetched."""
        ...


@dataclass(frozen=True)
class GitHubSourceFetcher:
    client: GitHubRestClient
    ref: str
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    async def fetch_file(self, path: str) -> str:
        try:
            f = await with_rate_limit_retry(
                lambda: self.client.get_file(path=path, ref=self.ref), policy=self.retry, label=f"get {path}"
            )
        except (GitHubApiError, httpx.HTTPError) as e:
            logger.debug("Could not fetch %s: %s", path, e)
            return ""
        return f.content


@dataclass(frozen=True)
class LocalSourceFetcher:
    """Reads files from a checked-out working tree."""

    root: str

    async def fetch_file(self, path: str) -> str:
        root = os.path.normpath(self.root)
        abs_path = os.path.normpath(os.path.join(root, path))
        if not abs_path.startswith(root + os.sep) or not os.path.isfile(abs_path):
            logger.debug("Could not fetch %s: not a file under %s", path, self.root)
            return ""
        try:
            with open(abs_path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            logger.debug("Could not fetch %s: %s", path, e)
            return ""


@dataclass(frozen=True)
class CodeReadingInput:
    test_file: str
    error_selectors: List[str] = field(default_factory=list)
    additional_files: List[str] = field(default_factory=list)


SUPPORT_PATHS: Sequence[str] = (
    "cypress/support/commands.js",
    "cypress/support/commands.ts",
    "cypress/support/e2e.js",
    "cypress/support/e2e.ts",
    "cypress/support/index.js",
    "cypress/support/index.ts",
)

WDIO_SUPPORT_PATHS: Sequence[str] = (
    "test/support/commands.js",
    "test/support/commands.ts",
    "wdio.conf.js",
    "wdio.conf.ts",
)

IMPORT_EXTENSIONS: Sequence[str] = ("", ".js", ".ts", ".jsx", ".tsx", "/index.js", "/index.ts")

STANDARD_CY_COMMANDS = frozenset(
    """
    get find contains click type should wait visit request intercept wrap then its invoke log pause debug
    scrollTo scrollIntoView focus blur clear submit select check uncheck trigger readFile writeFile fixture
    task exec screenshot viewport clearCookies clearLocalStorage getCookies setCookie getCookie hash location
    url title document window root within as clock tick stub spy reload go session origin
    """.split()
)

STANDARD_WDIO_COMMANDS = frozenset(
    """
    url pause waitUntil execute executeAsync keys saveScreenshot getUrl getTitle setWindowSize newWindow
    switchWindow switchToFrame reloadSession deleteCookies setCookies getCookies debug call mock
    """.split()
)

_ES6_IMPORT = re.compile(r"""import\s+(?:(?:\{[^}]+\}|\*\s+as\s+\w+|\w+)\s+from\s+)?['"]([^'"]+)['"]""")
_REQUIRE = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")
_PAGE_OBJECT_REFS = (re.compile(r"\b(\w+Page)\."), re.compile(r"\b(\w+PageObject)\."), re.compile(r"\b(\w+PO)\."))
_CY_ADD_COMMAND = re.compile(r"""Cypress\.Commands\.add\s*\(\s*['"](\w+)['"]""")
_WDIO_ADD_COMMAND = re.compile(r"""browser\.addCommand\s*\(\s*['"](\w+)['"]""")
_CY_GET = re.compile(r"""cy\.get\s*\(\s*(['"`])(.+?)\1""")
_WDIO_SELECTOR = re.compile(r"""\$\$?\s*\(\s*(['"`])(.+?)\1""")
_DATA_TESTID = re.compile(r"""\[data-testid=["']([^"']+)["']\]""")
_UI_FILE = re.compile(r"\.(tsx?|jsx?|vue|svelte|css|scss|less|html)$")


def extract_imports(code: str) -> List[str]:
    return [m.group(1) for m in _ES6_IMPORT.finditer(code)] + [m.group(1) for m in _REQUIRE.finditer(code)]


def extract_helper_calls(code: str, framework: Optional[str] = None) -> List[str]:
    """Custom command invocations (`cy.login(`, `browser.loginAs(`), first occurrence order."""
    if framework == Framework.webdriverio.value:
        pattern, standard = re.compile(r"\bbrowser\.(\w+)\s*\("), STANDARD_WDIO_COMMANDS
    else:
        pattern, standard = re.compile(r"\bcy\.(\w+)\s*\("), STANDARD_CY_COMMANDS
    seen: Dict[str, None] = {}
    for m in pattern.finditer(code):
        if m.group(1) not in standard:
            seen.setdefault(m.group(1), None)
    return list(seen)


def extract_page_object_refs(code: str) -> List[str]:
    seen: Dict[str, None] = {}
    for pattern in _PAGE_OBJECT_REFS:
        for m in pattern.finditer(code):
            seen.setdefault(m.group(1), None)
    return list(seen)


def extract_selectors_from_code(code: str) -> List[str]:
    seen: Dict[str, None] = {}
    for pattern in (_CY_GET, _WDIO_SELECTOR):
        for m in pattern.finditer(code):
            seen.setdefault(m.group(2), None)
    for m in _DATA_TESTID.finditer(code):
        seen.setdefault(f'[data-testid="{m.group(1)}"]', None)
    return list(seen)


def extract_custom_commands(code: str, file: str) -> List[CustomCommand]:
    out: List[CustomCommand] = []
    for pattern in (_CY_ADD_COMMAND, _WDIO_ADD_COMMAND):
        for m in pattern.finditer(code):
            out.append(CustomCommand(name=m.group(1), file=file, definition=_extract_definition(code, m.start())))
    return out


def resolve_relative_path(base_dir: str, relative: str) -> str:
    parts = [p for p in base_dir.split("/") if p]
    for part in relative.split("/"):
        if part == "..":
            if parts:
                parts.pop()
        elif part not in (".", ""):
            parts.append(part)
    return "/".join(parts)


def kebab_case(name: str) -> str:
    return re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", name).lower()


def is_ui_component_file(filename: str) -> bool:
    return bool(_UI_FILE.search(filename))


def _extract_definition(code: str, start: int, *, scan_limit: int = 2000, max_len: int = 500) -> str:
    depth = 0
    started = False
    end = start
    for i in range(start, min(len(code), start + scan_limit)):
        ch = code[i]
        if ch == "{":
            started = True
            depth += 1
        elif ch == "}":
            depth -= 1
            if started and depth == 0:
                end = i + 1
                break
    if end == start:
        end = min(len(code), start + max_len)
    return code[start : min(end, start + max_len)]


class CodeReadingAgent:
    """
    Fetches the failing test and its support files. No model call.

    Per-file fetch failures are skipped; only a missing test file fails the stage.
    """

    name = "CodeReadingAgent"

    def __init__(self, fetcher: Optional[SourceFetcher] = None, *, diff_file_max_chars: int = 5000):
        self.fetcher = fetcher
        self.diff_file_max_chars = diff_file_max_chars
        self._api_calls = 0

    async def execute(self, input: CodeReadingInput, context: AgentContext) -> AgentResult[CodeReadingOutput]:
        started = time.monotonic()
        self._api_calls = 0
        logger.info("[%s] Starting code reading...", self.name)
        try:
            output = await self._read(input, context)
        except Exception as e:  # noqa: BLE001 (agent boundary)
            logger.warning("[%s] Failed: %s", self.name, e)
            return AgentResult[CodeReadingOutput](
                success=False, error=str(e), execution_time_ms=_ms(started), api_calls=self._api_calls
            )
        if output is None:
            return AgentResult[CodeReadingOutput](
                success=False,
                error="Could not fetch test file content",
                execution_time_ms=_ms(started),
                api_calls=self._api_calls,
            )
        logger.info("[%s] Completed: %s", self.name, output.summary)
        return AgentResult[CodeReadingOutput](
            success=True, data=output, execution_time_ms=_ms(started), api_calls=self._api_calls
        )

    async def _fetch(self, path: str) -> str:
        if self.fetcher is None:
            return ""
        self._api_calls += 1
        return await self.fetcher.fetch_file(path)

    async def _read(self, input: CodeReadingInput, context: AgentContext) -> Optional[CodeReadingOutput]:
        test_content = context.source_file_content or ""
        if not test_content:
            test_content = await self._fetch(input.test_file)
        if not test_content:
            return None

        related: Dict[str, RelatedFile] = {}
        commands: List[CustomCommand] = []
        page_objects: List[PageObject] = []
        test_dir = posixpath.dirname(input.test_file)

        support = await self._fetch_support_files(test_dir, extract_imports(test_content), context.framework)
        for path, content in support.items():
            related[path] = RelatedFile(path=path, content=content, relevance="Helper/support file")
            commands.extend(extract_custom_commands(content, path))

        helpers = extract_helper_calls(test_content, context.framework)
        known = {c.name for c in commands}
        missing = [h for h in helpers if h not in known]
        if missing:
            logger.debug("[%s] Helpers without a located definition: %s", self.name, ", ".join(missing))

        for ref in extract_page_object_refs(test_content):
            found = await self._find_page_object(ref, test_dir)
            if found is None:
                continue
            path, content = found
            related.setdefault(path, RelatedFile(path=path, content=content, relevance="Page object file"))
            page_objects.append(PageObject(name=ref, file=path, selectors=extract_selectors_from_code(content)))

        for path in input.additional_files:
            if path in related:
                continue
            content = await self._fetch(path)
            if content:
                related[path] = RelatedFile(path=path, content=content, relevance="Requested file")

        if input.error_selectors and context.pr_diff:
            for f in context.pr_diff.files:
                if f.status == "removed" or f.filename in related or not is_ui_component_file(f.filename):
                    continue
                content = await self._fetch(f.filename)
                if content:
                    related[f.filename] = RelatedFile(
                        path=f.filename,
                        content=content[: self.diff_file_max_chars],
                        relevance="File from PR diff that may contain relevant selectors",
                    )

        files = list(related.values())
        return CodeReadingOutput(
            test_file_content=test_content,
            related_files=files,
            custom_commands=commands,
            page_objects=page_objects,
            summary=_summary(test_content, files, commands, page_objects),
        )

    async def _fetch_support_files(self, test_dir: str, imports: List[str], framework: Optional[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        paths = WDIO_SUPPORT_PATHS if framework == Framework.webdriverio.value else SUPPORT_PATHS
        for path in paths:
            content = await self._fetch(path)
            if content:
                out[path] = content

        for imp in imports:
            if not imp.startswith("."):
                continue
            base = resolve_relative_path(test_dir, imp)
            for ext in IMPORT_EXTENSIONS:
                candidate = base + ext
                if candidate in out:
                    break
                content = await self._fetch(candidate)
                if content:
                    out[candidate] = content
                    break
        return out

    async def _find_page_object(self, name: str, test_dir: str) -> Optional[tuple[str, str]]:
        kebab = kebab_case(name)
        roots = [f"{test_dir}/page-objects", f"{test_dir}/pages", "cypress/page-objects", "cypress/pages"]
        if test_dir == "":
            roots = roots[2:]
        for root in roots:
            for ext in (".ts", ".js"):
                path = f"{root}/{kebab}{ext}"
                content = await self._fetch(path)
                if content:
                    return path, content
        return None


def _summary(
    test_content: str,
    files: List[RelatedFile],
    commands: List[CustomCommand],
    page_objects: List[PageObject],
) -> str:
    parts = [f"Test file: {len(test_content.splitlines())} lines", f"Related files found: {len(files)}"]
    if commands:
        parts.append("Custom commands: " + ", ".join(c.name for c in commands))
    if page_objects:
        parts.append("Page objects: " + ", ".join(p.name for p in page_objects))
    return ". ".join(parts)


def _ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
