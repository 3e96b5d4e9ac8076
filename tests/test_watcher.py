import threading
import time

from smartbackup.watcher import Debouncer, RunGuard


def test_run_guard_drops_trigger_while_a_run_is_in_flight() -> None:
    guard = RunGuard()
    started = threading.Event()
    release = threading.Event()
    runs: list[str] = []

    def _slow() -> None:
        runs.append("slow")
        started.set()
        release.wait(5)

    worker = threading.Thread(target=guard.run, args=(_slow,))
    worker.start()
    assert started.wait(5)
    assert guard.busy
    assert guard.run(lambda: runs.append("dropped")) is False
    release.set()
    worker.join(5)

    assert guard.run(lambda: runs.append("next")) is True
    assert runs == ["slow", "next"]


def test_debouncer_coalesces_bursts() -> None:
    fired: list[float] = []
    debouncer = Debouncer(0.05, lambda: fired.append(time.monotonic()))
    for _ in range(5):
        debouncer.schedule()
    time.sleep(0.3)
    assert len(fired) == 1
    debouncer.cancel()
