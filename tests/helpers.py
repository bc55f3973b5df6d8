import os


class FakeHarness:
    """Browser harness driven by a script of per-component outcomes.

    ``script`` maps a component name to a list of runs; each run is either
    an exception to raise or a dict of browser -> list of (path, state),
    with an optional ``"<browser>:error"`` key for a browser-level error.
    Like the selenium harness, a browser with failing tests and no explicit
    error ends with a "N failed tests" error. The last run repeats when the
    script runs out.
    """

    def __init__(self, script=None, default=None):
        self.script = script or {}
        self.default = default if default is not None else {"chrome": [("test/basic.html", "passing")]}
        self.calls = []
        self.on_run = None

    def run(self, component_dir, collector):
        name = os.path.basename(component_dir)
        runs = self.script.get(name, [self.default])
        outcome = runs[min(self.calls.count(name), len(runs) - 1)]
        self.calls.append(name)
        if self.on_run:
            self.on_run(name)
        if isinstance(outcome, Exception):
            raise outcome
        for browser, tests in outcome.items():
            if browser.endswith(":error"):
                continue
            collector.browser_init(browser)
            collector.browser_start(browser, "120")
            for path, state in tests:
                collector.test_end(browser, path, state)
            error = outcome.get(f"{browser}:error")
            failures = sum(1 for _, state in tests if state != "passing")
            if not error and failures:
                error = f"{failures} failed tests"
            collector.browser_end(browser, error)
