"""Stage timing for build server phases.

StageTimer measures wall-clock time between named marks (launch, build,
teardown). When given a console it prints each stage as it completes; the
elapsed values are also kept so they can be attached to audit log entries and
CloudWatch spans.
"""

import time


class StageTimer:
    """Records elapsed wall-clock time after each named stage.

    Usage:
        t = StageTimer(console)
        controller.begin_build(config)
        t.mark("launch")      # prints "  launch  0.1s"
        run_actions()
        t.mark("build")       # prints "  build  4.2s"
    """

    def __init__(self, console=None, clock=time.monotonic):
        self.console = console
        self._clock = clock
        self._start = clock()
        self._stage_start = self._start
        self.stages = {}

    def mark(self, label):
        now = self._clock()
        elapsed = now - self._stage_start
        self._stage_start = now
        self.stages[label] = self.stages.get(label, 0.0) + elapsed
        if self.console is not None:
            self.console.print(f"  [dim]{label}  {elapsed:.1f}s[/dim]")
        return elapsed

    @property
    def total(self):
        return self._clock() - self._start
