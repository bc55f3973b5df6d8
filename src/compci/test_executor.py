import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from retrying import retry
from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.firefox.options import Options as FirefoxOptions
from selenium.webdriver.remote.webdriver import WebDriver

from .display import VirtualDisplay
from .errors import TestExecutionError, error_message
from .schemas import EngineResult, LogEntry, Report

logger = logging.getLogger(__name__)

TEST_PAGE = os.path.join("test", "index.html")
RESULTS_SCRIPT = "return window.__ciResults || null;"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def browser_error_message(error) -> str:
    """First line of a browser error, without the harness' ``[tag]`` prefix."""
    if error is None:
        return ""
    if not isinstance(error, str):
        error = getattr(error, "msg", None) or str(error)
    if not error:
        return ""
    line = error.split("\n")[0].strip()
    if line.startswith("[") and "]" in line:
        line = line[line.index("]") + 1:].strip()
    return line


class ResultCollector:
    """Receives the harness lifecycle hooks and keeps per-browser records."""

    def __init__(self):
        self.results: Dict[str, EngineResult] = {}

    def browser_init(self, browser: str, version: Optional[str] = None):
        logger.debug(f"Initializing browser {browser}")
        self.results[browser] = EngineResult(
            engine=f"{browser}|{version or ''}",
            browser=browser,
            version=version,
            status="init",
            start_time=_now(),
        )

    def browser_start(self, browser: str, version: Optional[str] = None):
        result = self.results[browser]
        result.status = "running"
        if version:
            result.version = version
            result.engine = f"{browser}|{version}"
        logger.debug(f"Starting browser {browser}")

    def test_end(self, browser: str, path: str, state: str):
        self.results[browser].logs.append(LogEntry(path=path, state=state))

    def browser_end(self, browser: str, error=None):
        result = self.results[browser]
        result.status = "failed" if error else "passed"
        result.end_time = _now()
        if error:
            result.error = True
            result.message = browser_error_message(error)
        logger.debug(f"Browser {browser} ended with status {result.status}")

    def has_logs(self) -> bool:
        return any(result.logs for result in self.results.values())


class BrowserHarness(Protocol):
    def run(self, component_dir: str, collector: ResultCollector) -> None:
        ...


class SeleniumHarness:
    """Runs a component's test page in each configured browser.

    The test page reports through ``window.__ciResults``:
    ``{"done": bool, "tests": [{"title": str, "state": str}], "error": str}``.
    """

    def __init__(self, browsers: List[str], hub_url: Optional[str] = None, timeout: int = 600,
                 poll_interval: float = 1.0):
        self.browsers = browsers
        self.hub_url = hub_url
        self.timeout = timeout
        self.poll_interval = poll_interval

    def _options(self, browser: str):
        if browser == "firefox":
            return FirefoxOptions()
        if browser == "chrome":
            options = ChromeOptions()
            options.add_argument("--no-sandbox")
            options.add_argument("--disable-dev-shm-usage")
            options.add_argument("--allow-file-access-from-files")
            return options
        raise TestExecutionError(f"Unsupported browser '{browser}'")

    @retry(stop_max_attempt_number=3, wait_fixed=5000,
           retry_on_exception=lambda e: isinstance(e, WebDriverException))
    def create_session(self, browser: str) -> WebDriver:
        options = self._options(browser)
        if self.hub_url:
            driver = webdriver.Remote(command_executor=self.hub_url, options=options)
        elif browser == "firefox":
            driver = webdriver.Firefox(options=options)
        else:
            driver = webdriver.Chrome(options=options)
        logger.info(f"Created {browser} session: {driver.session_id}")
        return driver

    def _wait_for_results(self, driver: WebDriver) -> dict:
        deadline = time.time() + self.timeout
        results = None
        while time.time() < deadline:
            results = driver.execute_script(RESULTS_SCRIPT)
            if results and results.get("done"):
                return results
            time.sleep(self.poll_interval)
        return {"tests": (results or {}).get("tests", []), "error": f"Timed out after {self.timeout}s"}

    def run(self, component_dir: str, collector: ResultCollector) -> None:
        page = os.path.join(component_dir, TEST_PAGE)
        if not os.path.exists(page):
            raise FileNotFoundError(f"Test page not found: {page}")

        for browser in self.browsers:
            collector.browser_init(browser)
            driver = None
            error = None
            try:
                driver = self.create_session(browser)
                collector.browser_start(browser, driver.capabilities.get("browserVersion"))
                driver.get(f"file://{page}")
                results = self._wait_for_results(driver)
                failures = 0
                for test in results.get("tests") or []:
                    state = test.get("state", "failed")
                    collector.test_end(browser, test.get("title", ""), state)
                    if state != "passing":
                        failures += 1
                error = results.get("error")
                if not error and failures:
                    error = f"{failures} failed tests"
            except WebDriverException as e:
                error = e
            finally:
                if driver:
                    driver.quit()
            collector.browser_end(browser, error)


def build_report(results: List[EngineResult], retry_count: int) -> Report:
    passing = True
    passed = 0
    failed = 0
    for result in results:
        if result.status == "failed":
            passing = False
        result.passed = sum(1 for entry in result.logs if entry.state == "passing")
        result.failed = len(result.logs) - result.passed
        passed += result.passed
        failed += result.failed
        if result.error:
            failed += 1
    return Report(
        passing=passing,
        retry_count=retry_count,
        results=results,
        passed=passed,
        failed=failed,
        end_time=_now(),
    )


class TestExecutor:
    __test__ = False

    def __init__(self, harness: BrowserHarness, display: Optional[VirtualDisplay] = None):
        self.harness = harness
        self.display = display

    async def _run_once(self, target: str, component_dir: str) -> ResultCollector:
        collector = ResultCollector()
        try:
            await asyncio.to_thread(self.harness.run, component_dir, collector)
        except Exception as e:
            raise TestExecutionError(f"Test execution failed for {target}: {error_message(e)}") from e
        return collector

    async def execute(self, target: str, working_dir: str) -> Report:
        component_dir = os.path.join(working_dir, target)
        if self.display:
            await self.display.acquire()

        logger.info(f"Running browser tests for {target}")
        retried = False
        collector = None
        # The harness sometimes ends without collecting anything; one retry only.
        for _ in range(2):
            collector = await self._run_once(target, component_dir)
            if collector.has_logs() or retried:
                break
            retried = True
            logger.warning(f"Retrying {target}: no test results were recorded")

        report = build_report(list(collector.results.values()), retry_count=1 if retried else 0)
        logger.info(
            f"Browser tests for {target} finished: passing={report.passing}, "
            f"passed={report.passed}, failed={report.failed}"
        )
        return report
