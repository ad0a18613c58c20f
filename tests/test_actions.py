"""Tests for the remediation primitives."""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from apphelper.actions import (
    ActionKind,
    ActionOutcome,
    ActionVerb,
    OutcomeStatus,
    Reporter,
)
from apphelper.core.interfaces import AuthorizationStatus
from apphelper.errors import LaunchFailed, QuitEscalationExhausted
from apphelper.utils.commands import CommandResult, CommandTimeoutError

from conftest import make_app

MONITOR_CONTROL = make_app("MonitorControl", "me.guillaumeb.MonitorControl")


class TestRestartWithPoll:
    def test_target_not_running_launches_once(self, executor, processes, backend) -> None:
        outcome = executor.restart_with_poll(MONITOR_CONTROL)

        assert outcome.status is OutcomeStatus.APPLIED
        assert processes.launches() == ["MonitorControl"]
        assert backend.posted == [("Rule Applied", "MonitorControl restarted")]

    def test_waits_until_old_instance_is_gone(self, executor, processes) -> None:
        handle = processes.add("MonitorControl", bundle_id="me.guillaumeb.MonitorControl")
        processes.linger[handle.pid] = 3
        processes.terminate(handle)

        outcome = executor.restart_with_poll(MONITOR_CONTROL)

        assert outcome.status is OutcomeStatus.APPLIED
        assert processes.launches() == ["MonitorControl"]

    def test_launch_failure_reported_not_retried(self, executor, processes, event_log, backend) -> None:
        processes.launch_results["MonitorControl"] = False

        outcome = executor.restart_with_poll(MONITOR_CONTROL)

        assert outcome.status is OutcomeStatus.FAILED
        assert isinstance(outcome.error, LaunchFailed)
        assert processes.launches() == ["MonitorControl"]
        assert event_log.entries == ["MonitorControl restarted failed"]
        assert backend.posted == [("Rule Applied", "MonitorControl failed")]

    def test_gives_up_when_target_never_quits(self, executor, processes) -> None:
        processes.add("MonitorControl", bundle_id="me.guillaumeb.MonitorControl")
        executor.poll_timeout = 0.05

        outcome = executor.restart_with_poll(MONITOR_CONTROL)

        assert outcome.status is OutcomeStatus.FAILED
        assert processes.launches() == []

    def test_shutdown_interrupts_poll(self, executor, processes, stop_event) -> None:
        processes.add("MonitorControl", bundle_id="me.guillaumeb.MonitorControl")
        stop_event.set()

        outcome = executor.restart_with_poll(MONITOR_CONTROL)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert processes.launches() == []


class TestEscalatingQuit:
    def test_graceful_terminate_is_enough(self, executor, processes, runner) -> None:
        handle = processes.add("Safari Web Content")

        outcome = executor.escalating_quit(lambda h: "Web Content" in h.name)

        assert outcome.status is OutcomeStatus.APPLIED
        assert processes.terminations(handle.pid) == [("terminate", handle.pid, False)]
        assert runner.calls == []

    def test_force_terminate_success_skips_kill(self, executor, processes, runner) -> None:
        handle = processes.add("Safari Web Content")
        processes.terminate_results[handle.pid] = [False, True]

        executor.escalating_quit(lambda h: "Web Content" in h.name)

        assert processes.terminations(handle.pid) == [
            ("terminate", handle.pid, False),
            ("terminate", handle.pid, True),
        ]
        assert runner.calls_starting_with("kill -9") == []

    def test_resisting_process_gets_exactly_one_kill(self, executor, processes, runner) -> None:
        handle = processes.add("Safari Web Content", pid=777)
        processes.terminate_results[handle.pid] = [False, False]
        runner.mock_response("kill -9", CommandResult("", "", 0))

        outcome = executor.escalating_quit(lambda h: "Web Content" in h.name)

        assert outcome.status is OutcomeStatus.APPLIED
        assert runner.calls == ["kill -9 777"]

    def test_exclusions_are_never_touched(self, executor, processes) -> None:
        keep = processes.add("SafariBookmarksSyncAgent")
        kill = processes.add("Safari Networking")

        executor.escalating_quit(lambda h: "Safari" in h.name, exclude=("SafariBookmarksSyncAgent",))

        assert processes.terminations(keep.pid) == []
        assert processes.terminations(kill.pid) == [("terminate", kill.pid, False)]

    def test_nothing_matching_is_a_skip(self, executor, event_log) -> None:
        outcome = executor.escalating_quit(lambda h: True)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert event_log.entries == []

    def test_one_report_for_many_processes(self, executor, processes, event_log, backend) -> None:
        processes.add("QQMusic Web Content")
        processes.add("QQMusic Web Content")

        executor.escalating_quit(lambda h: "QQMusic" in h.name, label="QQMusic")

        assert event_log.entries == ["Quit QQMusic"]
        assert len(backend.posted) == 1

    def test_kill_timeout_is_user_visible(self, executor, processes, runner, backend) -> None:
        handle = processes.add("Open and Save Panel Service")
        processes.terminate_results[handle.pid] = [False, False]
        runner.mock_response("kill -9", CommandTimeoutError("kill -9", 5))

        outcome = executor.escalating_quit(lambda h: "Panel" in h.name)

        assert outcome.status is OutcomeStatus.FAILED
        assert backend.posted and "timed out" in backend.posted[0][1]

    def test_verified_kill_of_survivor_fails(self, executor, processes, runner) -> None:
        handle = processes.add("Stubborn")
        processes.terminate_results[handle.pid] = [False, False]
        runner.mock_response("kill -9", CommandResult("", "", 0))
        executor.verify_kill = True

        outcome = executor.escalating_quit(lambda h: h.name == "Stubborn")

        assert outcome.status is OutcomeStatus.FAILED
        assert isinstance(outcome.error, QuitEscalationExhausted)


class TestQuitNamedService:
    def test_kills_when_service_running(self, executor, runner, event_log) -> None:
        runner.mock_response("pgrep", CommandResult("4242", "", 0))
        runner.mock_response("pkill", CommandResult("", "", 0))

        outcome = executor.quit_named_service("SourceKitService", "com.apple.dt.SKAgent")

        assert outcome.status is OutcomeStatus.APPLIED
        assert runner.calls == ["pgrep SourceKitService", "pkill -9 com.apple.dt.SKAgent"]
        assert event_log.entries == ["Quit SourceKitService"]

    def test_absent_service_is_a_skip(self, executor, runner) -> None:
        runner.mock_response("pgrep", CommandResult("", "", 1))

        outcome = executor.quit_named_service("SourceKitService", "com.apple.dt.SKAgent")

        assert outcome.status is OutcomeStatus.SKIPPED
        assert runner.calls_starting_with("pkill") == []


class TestLaunchIfAbsent:
    def test_launches_missing_app(self, executor, processes, event_log) -> None:
        outcome = executor.launch_if_absent(make_app("SwitchHosts", "SwitchHosts"))

        assert outcome.verb is ActionVerb.STARTED
        assert event_log.entries == ["SwitchHosts started"]

    def test_running_app_left_alone(self, executor, processes) -> None:
        processes.add("SwitchHosts", bundle_id="SwitchHosts")

        outcome = executor.launch_if_absent(make_app("SwitchHosts", "SwitchHosts"))

        assert outcome.status is OutcomeStatus.SKIPPED
        assert processes.launches() == []

    def test_repeated_ticks_launch_once(self, executor, processes) -> None:
        app = make_app("NightOwl", "com.fuekiin.NightOwl")

        executor.launch_if_absent(app)
        executor.launch_if_absent(app)

        assert processes.launches() == ["NightOwl"]


class TestWatchHighCpu:
    def test_warns_after_sustained_usage(self, executor, processes, runner, event_log) -> None:
        processes.add("Xcode", bundle_id="com.apple.dt.Xcode")
        runner.mock_response("ps -o %cpu", CommandResult("%CPU\n250.0", "", 0))
        xcode = make_app("Xcode", "com.apple.dt.Xcode")

        outcomes = [executor.watch_high_cpu(xcode) for _ in range(6)]

        assert [o.status for o in outcomes[:5]] == [OutcomeStatus.SKIPPED] * 5
        assert outcomes[5].status is OutcomeStatus.APPLIED
        assert event_log.entries == ["Xcode uses high CPU!"]

    def test_counter_resets_when_usage_drops(self, executor, processes, runner, event_log) -> None:
        processes.add("Xcode", bundle_id="com.apple.dt.Xcode")
        xcode = make_app("Xcode", "com.apple.dt.Xcode")
        runner.mock_response("ps -o %cpu", CommandResult("%CPU\n250.0", "", 0))
        for _ in range(5):
            executor.watch_high_cpu(xcode)
        runner.mock_response("ps -o %cpu", CommandResult("%CPU\n3.0", "", 0))
        executor.watch_high_cpu(xcode)
        runner.mock_response("ps -o %cpu", CommandResult("%CPU\n250.0", "", 0))

        executor.watch_high_cpu(xcode)

        assert event_log.entries == []


class TestPerform:
    def test_restart_companion_terminates_then_relaunches(self, executor, processes) -> None:
        handle = processes.add("MonitorControl", bundle_id="me.guillaumeb.MonitorControl")
        rule = SimpleNamespace(action=ActionKind.RESTART_COMPANION, target=MONITOR_CONTROL)

        outcome = executor.perform(rule)

        assert processes.calls == [("terminate", handle.pid, False), ("launch", "MonitorControl")]
        assert outcome.verb is ActionVerb.RESTARTED

    def test_restart_companion_not_running_is_a_skip(self, executor, processes) -> None:
        rule = SimpleNamespace(action=ActionKind.RESTART_COMPANION, target=MONITOR_CONTROL)

        outcome = executor.perform(rule)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert processes.calls == []

    def test_cleanup_uses_alias(self, executor, processes) -> None:
        helper = processes.add("QQMusic Web Content")
        rule = SimpleNamespace(
            name="cleanUpWebContentRemains",
            action=ActionKind.CLEANUP_ORPHANED_HELPERS,
            services=("Web Content",),
            exclude=(),
            aliases=(("QQ音乐", "QQMusic"),),
        )

        executor.perform(rule, make_app("QQ音乐"))

        assert processes.terminations(helper.pid)


class TestReporter:
    def test_notify_user_off_still_logs(self, gateway, event_log, backend) -> None:
        reporter = Reporter(gateway, event_log, notify_user=False)

        reporter.report(ActionOutcome(OutcomeStatus.APPLIED, "Safari", ActionVerb.QUIT, "Quit Safari"))

        assert event_log.entries == ["Quit Safari"]
        assert backend.posted == []

    def test_denied_permission_does_not_raise(self, reporter, backend, event_log) -> None:
        backend.status = AuthorizationStatus.DENIED

        reporter.report(ActionOutcome(OutcomeStatus.APPLIED, "Safari", ActionVerb.QUIT))

        assert event_log.entries == ["Safari quit"]
        assert backend.posted == []

    @pytest.mark.parametrize("error", [None, RuntimeError("boom")])
    def test_plain_failures_are_log_only(self, reporter, backend, event_log, error) -> None:
        reporter.report(ActionOutcome(OutcomeStatus.FAILED, "Safari", ActionVerb.QUIT, "Can not quit Safari.", error))

        assert event_log.entries == ["Can not quit Safari."]
        assert backend.posted == []
