"""
Conversion strategies and the selector that tries them in order.

Each strategy wraps one way of producing the target file: a byte copy, a
small built-in text transform, or an external program run as a subprocess
with a bounded timeout. Strategies report failure by raising ``EngineError``
with a short diagnostic code; the selector collects those codes and raises
``ConversionFailed`` when nothing worked.
"""
import html
import logging
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence

from ..config import Settings
from .errors import ConversionFailed, EngineError
from .interfaces import ConversionStrategy, ConversionTask
from .models import PLAIN_TEXT_FORMATS, normalize_format

logger = logging.getLogger(__name__)

Runner = Callable[..., "subprocess.CompletedProcess[bytes]"]


def _resolve_executable(configured: str | None, candidates: Sequence[str]) -> str | None:
    if configured:
        return shutil.which(configured)
    for name in candidates:
        found = shutil.which(name)
        if found:
            return found
    return None


def _run_command(runner: Runner, argv: list[str], *, timeout: float, label: str) -> None:
    try:
        proc = runner(argv, capture_output=True, timeout=timeout, check=False)
    except FileNotFoundError:
        raise EngineError(f"{label} not installed") from None
    except OSError as e:
        raise EngineError(f"{label} failed to start: {e.strerror or e}") from None
    except subprocess.TimeoutExpired:
        raise EngineError(f"{label} timed out after {timeout:g}s") from None
    if proc.returncode != 0:
        stderr = (proc.stderr or b"").decode("utf-8", "replace").strip().splitlines()
        logger.debug("%s stderr: %s", label, stderr[-1] if stderr else "")
        raise EngineError(f"{label} exited with code {proc.returncode}")


def _require_output(path: str, label: str) -> None:
    p = Path(path)
    if not p.is_file() or p.stat().st_size == 0:
        raise EngineError(f"{label} produced no output")


# ─── Built-in text helpers ──────────────────────────────────────────────────

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def html_to_text(markup: str) -> str:
    """Drop scripts, styles, comments and tags, then collapse whitespace."""
    text = _SCRIPT_STYLE_RE.sub(" ", markup)
    text = _COMMENT_RE.sub(" ", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def text_to_html(text: str, title: str = "Document") -> str:
    """Escape ``&``, ``<`` and ``>`` and keep the original line breaks inside ``<pre>``."""
    body = html.escape(text, quote=False)
    return (
        "<!doctype html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '<meta charset="utf-8">\n'
        f"<title>{html.escape(title)}</title>\n"
        "<style>body{font-family:sans-serif;margin:2rem}pre{white-space:pre-wrap}</style>\n"
        "</head>\n"
        "<body>\n"
        f"<pre>{body}</pre>\n"
        "</body>\n"
        "</html>\n"
    )


def _read_text(path: str) -> str:
    return Path(path).read_bytes().decode("utf-8", errors="replace")


# ─── Strategies ─────────────────────────────────────────────────────────────


class PassthroughStrategy:
    """Same format, or both sides in the plain-text family: copy bytes."""

    name = "passthrough"

    def applies(self, source_format: str, target_format: str) -> bool:
        return source_format == target_format or (
            source_format in PLAIN_TEXT_FORMATS and target_format in PLAIN_TEXT_FORMATS
        )

    def attempt(self, task: ConversionTask) -> None:
        shutil.copyfile(task.input_path, task.output_path)


class TextTransformStrategy:
    name = "text-transform"

    _PAIRS = {("html", "txt"), ("txt", "html")}

    def applies(self, source_format: str, target_format: str) -> bool:
        return (source_format, target_format) in self._PAIRS

    def attempt(self, task: ConversionTask) -> None:
        source = _read_text(task.input_path)
        if task.source_format == "html":
            result = html_to_text(source)
        else:
            result = text_to_html(source, title=Path(task.input_path).stem)
        Path(task.output_path).write_text(result, encoding="utf-8")


class _ChromiumRenderer:
    """One headless Chromium-family binary able to print a page to PDF."""

    def __init__(self, label: str, configured: str | None, candidates: Sequence[str], *, timeout: float, runner: Runner) -> None:
        self.label = label
        self._configured = configured
        self._candidates = tuple(candidates)
        self._timeout = timeout
        self._runner = runner

    def render(self, html_path: str, output_path: str) -> None:
        exe = _resolve_executable(self._configured, self._candidates)
        if exe is None:
            raise EngineError(f"{self.label} not installed")
        argv = [
            exe,
            "--headless",
            "--disable-gpu",
            "--no-sandbox",
            "--no-pdf-header-footer",
            f"--print-to-pdf={output_path}",
            Path(html_path).resolve().as_uri(),
        ]
        _run_command(self._runner, argv, timeout=self._timeout, label=self.label)
        _require_output(output_path, self.label)


class HtmlRenderStrategy:
    """Render HTML (or text wrapped into HTML) to PDF through a headless browser.

    A server-safe headless shell is tried first, then a locally installed
    browser. Either may be missing; the strategy only fails when both do.
    """

    name = "html-renderer"

    _SOURCES = {"html", "txt", "md"}

    def __init__(self, renderers: Sequence[_ChromiumRenderer]) -> None:
        self._renderers = list(renderers)

    @classmethod
    def from_settings(cls, settings: Settings, runner: Runner = subprocess.run) -> "HtmlRenderStrategy":
        return cls(
            [
                _ChromiumRenderer(
                    "headless shell",
                    settings.headless_shell_path,
                    ("chrome-headless-shell", "headless_shell"),
                    timeout=settings.renderer_timeout_sec,
                    runner=runner,
                ),
                _ChromiumRenderer(
                    "browser",
                    settings.browser_path,
                    ("chromium", "chromium-browser", "google-chrome", "google-chrome-stable", "microsoft-edge"),
                    timeout=settings.renderer_timeout_sec,
                    runner=runner,
                ),
            ]
        )

    def applies(self, source_format: str, target_format: str) -> bool:
        return target_format == "pdf" and source_format in self._SOURCES

    def attempt(self, task: ConversionTask) -> None:
        if task.source_format == "html":
            self.render_file(task.input_path, task.output_path)
            return
        workdir = tempfile.mkdtemp(prefix="docspark-render-", dir=str(Path(task.output_path).parent))
        try:
            shell = Path(workdir) / "page.html"
            shell.write_text(text_to_html(_read_text(task.input_path), title=Path(task.input_path).stem), encoding="utf-8")
            self.render_file(str(shell), task.output_path)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def render_file(self, html_path: str, output_path: str) -> None:
        codes: list[str] = []
        for renderer in self._renderers:
            try:
                renderer.render(html_path, output_path)
                return
            except EngineError as e:
                codes.append(e.code)
                Path(output_path).unlink(missing_ok=True)
        raise EngineError(f"renderer unavailable ({', '.join(codes) or 'none configured'})")


class PandocStrategy:
    name = "pandoc"

    READERS = {"md": "markdown", "txt": "markdown", "html": "html", "docx": "docx", "rtf": "rtf", "csv": "csv"}
    WRITERS = {"md": "markdown", "txt": "plain", "html": "html", "docx": "docx", "rtf": "rtf", "pdf": "pdf"}

    def __init__(self, executable: str | None = None, *, timeout: float = 60, runner: Runner = subprocess.run) -> None:
        self._configured = executable
        self._timeout = timeout
        self._runner = runner

    def applies(self, source_format: str, target_format: str) -> bool:
        return True

    def attempt(self, task: ConversionTask) -> None:
        exe = _resolve_executable(self._configured, ("pandoc",))
        if exe is None:
            raise EngineError("pandoc not installed")
        reader = self.READERS.get(task.source_format)
        writer = self.WRITERS.get(task.target_format)
        if reader is None or writer is None:
            raise EngineError(f"pandoc cannot convert {task.source_format} to {task.target_format}")
        argv = [exe, "-f", reader, "-o", task.output_path, task.input_path]
        if writer != "pdf":
            argv[3:3] = ["-t", writer]
        if writer in {"html", "rtf"}:
            argv.append("--standalone")
        _run_command(self._runner, argv, timeout=self._timeout, label="pandoc")
        _require_output(task.output_path, "pandoc")


class LibreOfficeStrategy:
    name = "libreoffice"

    FILTERS = {
        "pdf": "writer_pdf_Export",
        "docx": "MS Word 2007 XML",
        "txt": "Text",
        "html": "HTML (StarWriter)",
        "rtf": "Rich Text Format",
        "csv": "Text - txt - csv (StarCalc)",
    }

    def __init__(self, executable: str | None = None, *, timeout: float = 120, runner: Runner = subprocess.run) -> None:
        self._configured = executable
        self._timeout = timeout
        self._runner = runner

    def applies(self, source_format: str, target_format: str) -> bool:
        return True

    def attempt(self, task: ConversionTask) -> None:
        exe = _resolve_executable(self._configured, ("soffice", "libreoffice"))
        if exe is None:
            raise EngineError("office engine not installed")
        filter_name = self.FILTERS.get(task.target_format)
        if filter_name is None:
            raise EngineError(f"office engine cannot write {task.target_format}")

        # Own profile dir per run so concurrent jobs do not fight over the user profile lock.
        outdir = tempfile.mkdtemp(prefix="docspark-office-", dir=str(Path(task.output_path).parent))
        try:
            argv = [
                exe,
                f"-env:UserInstallation={Path(outdir, 'profile').resolve().as_uri()}",
                "--headless",
                "--norestore",
                "--convert-to",
                f"{task.target_format}:{filter_name}",
                "--outdir",
                outdir,
                task.input_path,
            ]
            _run_command(self._runner, argv, timeout=self._timeout, label="office engine")
            produced = Path(outdir) / f"{Path(task.input_path).stem}.{task.target_format}"
            if not produced.is_file():
                raise EngineError("office engine produced no output")
            shutil.copyfile(produced, task.output_path)
        finally:
            shutil.rmtree(outdir, ignore_errors=True)


# ─── Selector ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConversionOutcome:
    engine: str
    output_path: str


class EngineSelector:
    def __init__(self, strategies: Iterable[ConversionStrategy]) -> None:
        self._strategies = list(strategies)

    @property
    def strategies(self) -> list[ConversionStrategy]:
        return list(self._strategies)

    def convert(self, input_path: str, output_path: str, source_format: str, target_format: str) -> ConversionOutcome:
        task = ConversionTask(
            input_path=input_path,
            output_path=output_path,
            source_format=normalize_format(source_format),
            target_format=normalize_format(target_format),
        )
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)

        codes: list[str] = []
        for strategy in self._strategies:
            if not strategy.applies(task.source_format, task.target_format):
                continue
            try:
                strategy.attempt(task)
            except EngineError as e:
                codes.append(e.code)
            except OSError as e:
                codes.append(f"{strategy.name} i/o error: {e.strerror or e}")
            else:
                logger.info(
                    "converted %s -> %s with %s", task.source_format, task.target_format, strategy.name
                )
                return ConversionOutcome(engine=strategy.name, output_path=output_path)
            Path(output_path).unlink(missing_ok=True)

        raise ConversionFailed(codes)


def build_default_selector(settings: Settings, runner: Runner = subprocess.run) -> EngineSelector:
    return EngineSelector(
        [
            PassthroughStrategy(),
            TextTransformStrategy(),
            HtmlRenderStrategy.from_settings(settings, runner=runner),
            PandocStrategy(settings.pandoc_path, timeout=settings.pandoc_timeout_sec, runner=runner),
            LibreOfficeStrategy(settings.soffice_path, timeout=settings.office_timeout_sec, runner=runner),
        ]
    )


def find_renderer(selector: EngineSelector) -> HtmlRenderStrategy | None:
    for strategy in selector.strategies:
        if isinstance(strategy, HtmlRenderStrategy):
            return strategy
    return None


__all__ = [
    "ConversionOutcome",
    "EngineSelector",
    "HtmlRenderStrategy",
    "LibreOfficeStrategy",
    "PandocStrategy",
    "PassthroughStrategy",
    "TextTransformStrategy",
    "build_default_selector",
    "find_renderer",
    "html_to_text",
    "text_to_html",
]
