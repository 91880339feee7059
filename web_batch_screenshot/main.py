import argparse
import asyncio
import base64
import cProfile
import contextlib
import io
import logging
import os
import re
import sys
import threading
import time
from functools import partial
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Optional,
    TextIO,
)
from urllib.parse import quote, urlsplit

import yaml
from playwright.async_api import Browser, BrowserContext
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Response, async_playwright

"""
This script reads a newline-delimited list of URLs and saves a fixed-size screenshot
of each one, driving a single headless Chromium through Playwright.

Pipeline:
1. A fixed pool of asyncio workers takes URLs one at a time through an unbuffered handoff.
2. Every job gets its own browser context (no cookies or storage shared between jobs)
   and a 20 second deadline counted from the moment it is dispatched.
3. The viewport is forced to 1920x1080 through the DevTools protocol and that rectangle
   is captured, whatever the page asks for.
4. Images land under <output>/<hostname>/<sanitized path>.png.
5. Any failure is appended to errorLog.txt and echoed on stderr; the batch carries on.

Example:
    cat urls.txt | python -m web_batch_screenshot.main -o out -c 4
"""

# ------------- Default Config -------------
DEFAULT_CONFIG = {
    "output": "out",
    "input": "",
    "concurrency": 2,
    "headless": True,
    # Accepted for compatibility, never consulted: captures always overwrite.
    "overwrite": False,
    "timeout_seconds": 20,
    "viewport_width": 1920,
    "viewport_height": 1080,
    "quality": 90,
    "error_log": "errorLog.txt",
    "ignore_https_errors": True,
    "browser_args": ["--disable-gpu", "--no-default-browser-check"],
    "save_meta": False,
}

CaptureFunc = Callable[[str, float], Awaitable[bytes]]


def setup_logger(logfile_path: Optional[str] = None) -> None:
    """
    Configure a root logger at INFO level, outputting to the console (stderr) and,
    when a path is given, to a logfile. Overwrites the logfile if it exists.
    """
    formatter = logging.Formatter("[%(asctime)s] %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    # Clear existing handlers if any
    root_logger.handlers = []
    root_logger.addHandler(console_handler)

    if logfile_path:
        file_handler = logging.FileHandler(logfile_path, mode="w", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


logger = logging.getLogger(__name__)


# ------------- Errors -------------
class ScreenshotError(Exception):
    """Base class for everything that can go wrong while processing a batch."""


class MalformedURL(ScreenshotError):
    """The job's URL could not be parsed."""


class CaptureFailure(ScreenshotError):
    """A protocol, navigation or deadline error while capturing one URL."""

    def __init__(self, stage: str, cause: object) -> None:
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class PersistenceFailure(ScreenshotError):
    """An image or metadata file could not be written."""

    def __init__(self, path: str, cause: object) -> None:
        super().__init__(f"cannot write {path}: {cause}")
        self.path = path
        self.cause = cause


class StartupFailure(ScreenshotError):
    """Fatal: the run cannot start (output dir, input, settings or browser)."""


def load_config(settings_file: Optional[str]) -> Dict[str, object]:
    """
    Load config from a YAML file if provided, else return defaults.
    If the YAML is malformed or not a dict, raise ValueError.
    """
    if settings_file and os.path.exists(settings_file):
        with open(settings_file, "r", encoding="utf-8") as f:
            user_config = yaml.safe_load(f)
            if not isinstance(user_config, dict):
                raise ValueError("Config file must define a dictionary of settings.")
            merged = {**DEFAULT_CONFIG, **user_config}
            return merged
    if settings_file:
        logger.warning(f"Settings file {settings_file} not found, using defaults.")
    return DEFAULT_CONFIG.copy()


# ------------- Output paths -------------
PATH_DISALLOWED = re.compile(r"[^a-zA-Z0-9_.%-]")
FULL_PATH_DISALLOWED = re.compile(r"[^a-zA-Z0-9_.%/-]")
DASH_RUN = re.compile(r"-+")
SLASH_RUN = re.compile(r"/+")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
# Characters that may appear unescaped in a URL path; '%' keeps existing escapes intact.
PATH_SAFE_CHARS = "/%!$&'()*+,;=:@[]~"


def _sanitize_segment(value: str) -> str:
    cleaned = PATH_DISALLOWED.sub("-", value)
    # "." and ".." would walk the directory tree
    if cleaned and not cleaned.strip("."):
        return "-"
    return cleaned


def make_filepath(output_dir: str, url: str) -> str:
    """
    Map a URL to a deterministic, filesystem-safe path (without extension):
        http://example.com/         => <output_dir>/example.com/index
        http://example.com/a//b?x=1 => <output_dir>/example.com/a-b

    Host and path are sanitized on their own first so nothing in either can add
    directory levels, then the composed string is sanitized again to clean up the
    join. Query strings and fragments are not part of the path. Raises MalformedURL
    for empty input, control characters or anything urllib refuses to split.
    """
    if not url or CONTROL_CHARS.search(url):
        raise MalformedURL(f"malformed URL {url!r}")
    try:
        parts = urlsplit(url)
        hostname = parts.hostname or ""
        # .port raises ValueError for non-numeric or out-of-range ports
        parts.port
    except ValueError as e:
        raise MalformedURL(f"malformed URL {url!r}: {e}") from e

    request_path = quote(parts.path, safe=PATH_SAFE_CHARS)
    if request_path == "/":
        request_path = "index"
    elif request_path.startswith("/"):
        request_path = request_path[1:]

    save_path = "{}/{}/{}".format(
        output_dir or ".",
        _sanitize_segment(hostname),
        _sanitize_segment(request_path),
    )
    save_path = FULL_PATH_DISALLOWED.sub("-", save_path)
    save_path = DASH_RUN.sub("-", save_path)
    save_path = SLASH_RUN.sub("/", save_path)
    return save_path.rstrip("/")


def create_output_dir(output_dir: str) -> None:
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as e:
        raise StartupFailure(f"cannot create output directory {output_dir}: {e}") from e


def save_image(path: str, image: bytes) -> None:
    """Write the image, creating the per-host directory. Existing files are replaced."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "wb") as f:
            f.write(image)
    except OSError as e:
        raise PersistenceFailure(path, e) from e


# ------------- Error log -------------
class ErrorSink:
    """
    Append-only failure log shared by every worker.

    Each record is echoed to `stream` and appended to `log_path` as a single line:
        run error: <error> ------ <url>
    The file is reopened in append mode for every record, so nothing is held open
    between failures. Problems writing the log are dropped; they must never stop
    the batch.
    """

    def __init__(self, log_path: str = "errorLog.txt", stream: Optional[TextIO] = None):
        self.log_path = log_path
        self.stream = stream
        self._lock = threading.Lock()

    def record(self, url: str, error: object) -> None:
        line = f"run error: {error} ------ {url}\n"
        stream = self.stream or sys.stderr
        with self._lock:
            stream.write(line)
            try:
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(line)
            except OSError as e:
                logger.debug(f"Could not append to {self.log_path}: {e}")


# ------------- Capture -------------
class BrowserHandle:
    """
    The one long-lived browser shared by all workers. Opening a fresh context is
    the only thing workers do with it.
    """

    def __init__(self, browser: Browser, ignore_https_errors: bool = True):
        self._browser = browser
        self._ignore_https_errors = ignore_https_errors

    async def new_context(self) -> BrowserContext:
        return await self._browser.new_context(
            ignore_https_errors=self._ignore_https_errors
        )


def _remaining(deadline: float) -> float:
    return deadline - time.monotonic()


async def _bounded(awaitable: Awaitable, deadline: float, stage: str):
    """Await one protocol step within what is left of the job's deadline."""
    remaining = _remaining(deadline)
    if remaining <= 0:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CaptureFailure(stage, "deadline exceeded")
    try:
        return await asyncio.wait_for(awaitable, timeout=remaining)
    except asyncio.TimeoutError as e:
        raise CaptureFailure(stage, "deadline exceeded") from e
    except PlaywrightError as e:
        raise CaptureFailure(stage, e.message) from e


_late_closes = set()


def _close_late_context(opening: asyncio.Future) -> None:
    """Done-callback: close a context whose job gave up before it finished opening."""
    if opening.cancelled() or opening.exception() is not None:
        return
    closing = asyncio.ensure_future(opening.result().close())
    _late_closes.add(closing)
    closing.add_done_callback(_late_close_done)


def _late_close_done(closing: asyncio.Future) -> None:
    _late_closes.discard(closing)
    if not closing.cancelled() and closing.exception() is not None:
        logger.debug(f"Error closing late context: {closing.exception()}")


async def save_meta(path: str, parent_url: str, response: Response) -> None:
    """
    Write a plain-text description of the main document request next to the image:
    url, parent, method, resource type, request headers ("> "), the POST body if any,
    and response headers ("< ").
    """
    request = response.request
    lines = [
        f"url: {request.url}",
        f"parent: {parent_url}",
        f"method: {request.method}",
        f"type: {request.resource_type}",
        "",
    ]
    for name, value in (await request.all_headers()).items():
        lines.append(f"> {name}: {value}")
    if request.post_data:
        lines.extend(["", request.post_data])
    lines.append("")
    for header in await response.headers_array():
        lines.append(f"< {header['name']}: {header['value']}")

    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
    except OSError as e:
        raise PersistenceFailure(path, e) from e


async def capture_screenshot(
    handle: BrowserHandle,
    config: Dict[str, object],
    url: str,
    deadline: float,
) -> bytes:
    """
    Screenshot one URL in its own browser context:
    - Navigate => force 1920x1080 landscape metrics (scale 1) => capture that rectangle
    - Every step shares the job's absolute deadline
    This is a viewport capture; the page's scroll height is ignored on purpose.
    Raises CaptureFailure with stage "navigate" or "capture".
    """
    width = int(config.get("viewport_width", 1920))
    height = int(config.get("viewport_height", 1080))
    quality = int(config.get("quality", 90))

    if _remaining(deadline) <= 0:
        raise CaptureFailure("navigate", "deadline exceeded")
    # Shielded so a context that finishes opening after the deadline can still be closed.
    opening = asyncio.ensure_future(handle.new_context())
    try:
        context = await _bounded(asyncio.shield(opening), deadline, "navigate")
    except BaseException:
        opening.add_done_callback(_close_late_context)
        raise
    try:
        context.set_default_timeout(max(_remaining(deadline), 0) * 1000)
        page = await _bounded(context.new_page(), deadline, "navigate")
        response = await _bounded(page.goto(url), deadline, "navigate")

        if config.get("save_meta") and response is not None:
            meta_path = make_filepath(str(config.get("output", "out")), url) + ".meta"
            await save_meta(meta_path, url, response)

        cdp = await _bounded(context.new_cdp_session(page), deadline, "capture")
        await _bounded(
            cdp.send(
                "Emulation.setDeviceMetricsOverride",
                {
                    "width": width,
                    "height": height,
                    "deviceScaleFactor": 1,
                    "mobile": False,
                    "screenOrientation": {"type": "landscapePrimary", "angle": 0},
                },
            ),
            deadline,
            "capture",
        )
        shot = await _bounded(
            cdp.send(
                "Page.captureScreenshot",
                {
                    "format": "png",
                    "quality": quality,
                    "clip": {
                        "x": 0,
                        "y": 0,
                        "width": width,
                        "height": height,
                        "scale": 1,
                    },
                },
            ),
            deadline,
            "capture",
        )
    finally:
        try:
            await context.close()
        except PlaywrightError as e:
            logger.debug(f"Error closing context for {url}: {e.message}")

    return base64.b64decode(shot["data"])


# ------------- Dispatch -------------
async def process_job(
    url: str,
    capture: CaptureFunc,
    output_dir: str,
    per_job_timeout: float,
    error_sink: ErrorSink,
) -> Optional[str]:
    """
    Capture and persist a single URL. Returns the written path, or None after the
    failure has been recorded. Never raises for job-level errors.
    """
    deadline = time.monotonic() + per_job_timeout
    try:
        try:
            image = await asyncio.wait_for(capture(url, deadline), timeout=per_job_timeout)
        except asyncio.TimeoutError as e:
            raise CaptureFailure("capture", "deadline exceeded") from e
        path = make_filepath(output_dir, url) + ".png"
        save_image(path, image)
    except ScreenshotError as e:
        error_sink.record(url, e)
        return None
    except Exception as e:
        logger.exception(f"Unexpected error processing {url}")
        error_sink.record(url, e)
        return None

    logger.info(f"Saved {url} => {path}")
    return path


async def _worker(
    worker_id: int,
    jobs: asyncio.Queue,
    capture: CaptureFunc,
    output_dir: str,
    per_job_timeout: float,
    error_sink: ErrorSink,
) -> None:
    while True:
        url = await jobs.get()
        # Releases the reader blocked in jobs.join(): the handoff is complete.
        jobs.task_done()
        if url is None:
            logger.debug(f"Worker {worker_id} done.")
            return
        await process_job(url, capture, output_dir, per_job_timeout, error_sink)


_EXHAUSTED = object()


async def dispatch(
    job_source: Iterable[str],
    capture: CaptureFunc,
    pool_size: int,
    per_job_timeout: float,
    output_dir: str,
    error_sink: ErrorSink,
    progress: Optional[TextIO] = None,
) -> None:
    """
    Fan URLs out to `pool_size` workers and wait for all of them.

    Workers start before any input is read. The handoff is unbuffered: after each
    put the reader waits on `jobs.join()` until a worker has taken the URL, so it
    never reads ahead of a free worker. Lines are pulled from `job_source` in the
    default executor (stdin can be slow) and each URL is echoed to `progress` before
    it is handed off. Blank lines are skipped.
    Returns once the source is exhausted and every worker has exited. If reading the
    source fails, the workers are cancelled and awaited before the error propagates.
    """
    if pool_size < 1:
        raise ValueError(f"pool size must be a positive integer, got {pool_size}")
    progress = progress or sys.stdout
    loop = asyncio.get_running_loop()

    jobs: asyncio.Queue = asyncio.Queue(maxsize=1)
    workers = [
        asyncio.create_task(
            _worker(i + 1, jobs, capture, output_dir, per_job_timeout, error_sink)
        )
        for i in range(pool_size)
    ]

    try:
        lines = iter(job_source)
        while True:
            line = await loop.run_in_executor(None, next, lines, _EXHAUSTED)
            if line is _EXHAUSTED:
                break
            url = line.strip()
            if not url:
                continue
            print(url, file=progress, flush=True)
            await jobs.put(url)
            await jobs.join()
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise

    for _ in workers:
        await jobs.put(None)
    await asyncio.gather(*workers)


async def _launch_browser(playwright, config: Dict[str, object]) -> Browser:
    try:
        return await playwright.chromium.launch(
            headless=bool(config.get("headless", True)),
            args=list(config.get("browser_args", [])),
        )
    except PlaywrightError as e:
        raise StartupFailure(f"error starting browser: {e.message}") from e


async def _run_with_browser(
    config: Dict[str, object],
    job_source: Iterable[str],
    error_sink: ErrorSink,
    progress: Optional[TextIO],
) -> None:
    async with async_playwright() as p:
        browser = await _launch_browser(p, config)
        handle = BrowserHandle(browser, bool(config.get("ignore_https_errors", True)))
        try:
            await dispatch(
                job_source,
                partial(capture_screenshot, handle, config),
                int(config["concurrency"]),
                float(config["timeout_seconds"]),
                str(config["output"]),
                error_sink,
                progress,
            )
        finally:
            await browser.close()


def run(
    config: Dict[str, object],
    job_source: Iterable[str],
    error_sink: ErrorSink,
    progress: Optional[TextIO] = None,
) -> None:
    """Launch the browser, process every URL in `job_source`, and block until done."""
    asyncio.run(_run_with_browser(config, job_source, error_sink, progress))


def open_input(path: str):
    """
    An empty path means stdin, which is left open afterwards. Bytes that are not
    valid UTF-8 become U+FFFD, so a bad line fails as its own job instead of
    aborting the read.
    """
    if not path:
        if isinstance(sys.stdin, io.TextIOWrapper):
            sys.stdin.reconfigure(errors="replace")
        return contextlib.nullcontext(sys.stdin)
    try:
        return open(path, "r", encoding="utf-8", errors="replace")
    except OSError as e:
        raise StartupFailure(f"cannot open input file {path}: {e}") from e


def resolve_config(args: argparse.Namespace) -> Dict[str, object]:
    """Defaults <= YAML settings file <= explicit CLI flags."""
    try:
        config = load_config(args.settings_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise StartupFailure(f"cannot read settings file {args.settings_file}: {e}") from e

    overrides = {
        "output": args.output,
        "input": args.input,
        "concurrency": args.concurrency,
        "timeout_seconds": args.timeout,
    }
    for key, value in overrides.items():
        if value is not None:
            config[key] = value
    if args.visible:
        config["headless"] = False
    if args.overwrite:
        config["overwrite"] = True
    if args.meta:
        config["save_meta"] = True

    if int(config["concurrency"]) < 1:
        raise StartupFailure("concurrency must be a positive integer")
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Screenshot every URL read from a file or stdin with a pool of headless Chromium contexts."
        )
    )
    parser.add_argument("-o", "--output", help="Output directory (default: out).")
    parser.add_argument(
        "-i", "--input", help="Input file with one URL per line; stdin if not given."
    )
    parser.add_argument(
        "-c", "--concurrency", type=int, help="Number of concurrent workers (default: 2)."
    )
    parser.add_argument(
        "-v", "--visible", action="store_true", help="Show the browser instead of running headless."
    )
    parser.add_argument(
        "-w",
        "--overwrite",
        action="store_true",
        help="Overwrite output files when they exist (existing files are always overwritten).",
    )
    parser.add_argument("-p", "--profile", help="File to save a cProfile of the run in.")
    parser.add_argument("--timeout", type=float, help="Per-URL deadline in seconds (default: 20).")
    parser.add_argument(
        "--meta", action="store_true", help="Write a .meta file with request/response headers per URL."
    )
    parser.add_argument("--settings-file", help="YAML file overriding the default settings.")
    parser.add_argument("--log-file", help="Also write log messages to this file.")
    return parser


def main() -> None:
    """
    CLI entry point:
    - From a file => -i urls.txt -o out
    - From stdin  => cat urls.txt | web-batch-screenshot -c 4
    Any StartupFailure is fatal: logged, exit status 1, nothing processed.
    """
    parser = build_parser()
    args = parser.parse_args()

    setup_logger(args.log_file)

    profiler = None
    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()

    try:
        config = resolve_config(args)
        create_output_dir(str(config["output"]))
        error_sink = ErrorSink(str(config["error_log"]))
        with open_input(str(config["input"] or "")) as source:
            logger.info(
                f"Starting batch => output {config['output']}, concurrency {config['concurrency']}"
            )
            run(config, source, error_sink)
    except StartupFailure as e:
        logger.critical(str(e))
        sys.exit(1)
    finally:
        if profiler is not None:
            profiler.disable()
            profiler.dump_stats(args.profile)

    logger.info("All URLs processed.")


if __name__ == "__main__":
    main()
