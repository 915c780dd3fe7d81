"""Unit tests for rule application on a page."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError


def _page() -> MagicMock:
    from webshield.page.applier import TAKE_RESULT_JS

    style = MagicMock()
    style.evaluate = AsyncMock(return_value=2)
    style.dispose = AsyncMock()
    tag = MagicMock()
    tag.evaluate = AsyncMock()
    tag.dispose = AsyncMock()

    async def evaluate(script: str, *args: Any) -> Any:
        if script == TAKE_RESULT_JS:
            return {"success": True}
        return None

    page = MagicMock()
    page.url = "https://example.com/"
    page.add_style_tag = AsyncMock(return_value=style)
    page.add_script_tag = AsyncMock(return_value=tag)
    page.evaluate = AsyncMock(side_effect=evaluate)
    return page


def _runtime(failing: tuple[str, ...] = ()) -> MagicMock:
    async def invoke(scope: Any, name: str, args: Any = (), verbose: bool = False) -> bool:
        return name not in failing

    runtime = MagicMock()
    runtime.invoke = AsyncMock(side_effect=invoke)
    return runtime


def _extended(matched: int | None = 1) -> MagicMock:
    extended = MagicMock()
    extended.apply = AsyncMock(return_value=matched)
    extended.dispose = AsyncMock(return_value=0)
    return extended


def _scope() -> MagicMock:
    scope = MagicMock()
    scope.close = AsyncMock()
    return scope


def _rule_set(**kwargs: Any):
    from webshield.models import RuleSet, ScriptletInvocation

    defaults: dict[str, Any] = {
        "css_inject": (".a { display: none; }", ".b { display: none; }"),
        "css_extended": (".c:has(> .ad)",),
        "scripts": ("window.x = 1;",),
        "scriptlets": (
            ScriptletInvocation("set-constant", ("a", "1")),
            ScriptletInvocation("nowebrtc"),
        ),
    }
    defaults.update(kwargs)
    return RuleSet(**defaults)


def _applier(page: MagicMock, runtime: MagicMock | None = None, extended: Any = None):
    from webshield.page.applier import PageRuleApplier

    return PageRuleApplier(
        page, runtime or _runtime(), extended_css=extended or _extended(), scope=_scope()
    )


class TestPageRuleApplier:
    """Tests for PageRuleApplier."""

    @pytest.mark.asyncio
    async def test_applies_every_category(self) -> None:
        """Test one pass over all four categories."""
        page = _page()
        extended = _extended(matched=1)
        runtime = _runtime()

        report = await _applier(page, runtime, extended).apply_all(_rule_set())

        assert (report.css_inject.attempted, report.css_inject.succeeded) == (2, 2)
        assert (report.css_extended.attempted, report.css_extended.succeeded) == (1, 1)
        assert (report.scripts.attempted, report.scripts.succeeded) == (1, 1)
        assert (report.scriptlets.attempted, report.scriptlets.succeeded) == (2, 2)
        assert report.error is None
        assert report.url == "https://example.com/"

        page.add_style_tag.assert_awaited_once_with(
            content=".a { display: none; }\n.b { display: none; }"
        )
        extended.apply.assert_awaited_once_with([".c:has(> .ad) { display: none !important; }"])
        assert runtime.invoke.await_count == 2

    @pytest.mark.asyncio
    async def test_same_rules_applied_once(self) -> None:
        """Test that reapplying an identical rule set injects nothing new."""
        page = _page()
        runtime = _runtime()
        applier = _applier(page, runtime)

        await applier.apply_all(_rule_set())
        second = await applier.apply_all(_rule_set())

        assert page.add_style_tag.await_count == 1
        assert page.add_script_tag.await_count == 1
        assert runtime.invoke.await_count == 2
        assert second.css_inject.attempted == 0
        assert second.css_inject.skipped == 1
        assert second.scriptlets.skipped == 2
        assert second.totals().attempted == 0

    @pytest.mark.asyncio
    async def test_new_rules_are_still_applied(self) -> None:
        """Test that only the changed group is injected on a second pass."""
        page = _page()
        applier = _applier(page)

        await applier.apply_all(_rule_set())
        await applier.apply_all(_rule_set(css_inject=(".z { display: none; }",)))

        assert page.add_style_tag.await_count == 2
        assert page.add_script_tag.await_count == 1

    @pytest.mark.asyncio
    async def test_scriptlet_partial_failure(self) -> None:
        """Test that one failing scriptlet does not stop the others."""
        from webshield.models import ScriptletInvocation

        runtime = _runtime(failing=("unknown",))
        applier = _applier(_page(), runtime)
        rule_set = _rule_set(
            scriptlets=(
                ScriptletInvocation("set-constant", ("a", "1")),
                ScriptletInvocation("unknown"),
                ScriptletInvocation("nowebrtc"),
            )
        )

        report = await applier.apply_all(rule_set)
        assert (report.scriptlets.attempted, report.scriptlets.succeeded) == (3, 2)

        # Only the failed invocation is tried again
        again = await applier.apply_all(rule_set)
        assert again.scriptlets.attempted == 1
        assert again.scriptlets.skipped == 2

    @pytest.mark.asyncio
    async def test_throwing_scriptlet_is_isolated(self) -> None:
        """Test that a scriptlet raising inside a real runtime spares its siblings."""
        from webshield.models import ScriptletInvocation
        from webshield.scriptlets.runtime import ScriptletRuntime

        ran: list[str] = []

        async def quiet(ctx: Any, *args: str) -> None:
            ran.append(ctx.source.name)

        async def broken(ctx: Any, *args: str) -> None:
            raise RuntimeError("selector exploded")

        on_error = MagicMock()
        runtime = ScriptletRuntime(on_error=on_error)
        runtime.register("first", quiet)
        runtime.register("broken", broken)
        runtime.register("last", quiet)

        report = await _applier(_page(), runtime).apply_all(
            _rule_set(
                scriptlets=(
                    ScriptletInvocation("first"),
                    ScriptletInvocation("broken"),
                    ScriptletInvocation("last"),
                )
            )
        )

        assert (report.scriptlets.attempted, report.scriptlets.succeeded) == (3, 2)
        assert sorted(ran) == ["first", "last"]
        assert report.scripts.succeeded == 1
        error_report = on_error.call_args.args[0]
        assert error_report.scriptlet_name == "broken"
        assert error_report.error_message == "selector exploded"

    @pytest.mark.asyncio
    async def test_category_failure_is_isolated(self) -> None:
        """Test that a failing CSS injection leaves the other categories alone."""
        page = _page()
        page.add_style_tag = AsyncMock(side_effect=PlaywrightError("Target closed"))

        report = await _applier(page).apply_all(_rule_set())

        assert (report.css_inject.attempted, report.css_inject.succeeded) == (2, 0)
        assert report.scripts.succeeded == 1
        assert report.scriptlets.succeeded == 2

    @pytest.mark.asyncio
    async def test_failing_script_block(self) -> None:
        """Test that a script block that throws counts as attempted only."""
        from webshield.page.applier import TAKE_RESULT_JS

        page = _page()

        async def evaluate(script: str, *args: Any) -> Any:
            if script == TAKE_RESULT_JS:
                return {"success": False, "error": "x is not defined"}
            return None

        page.evaluate = AsyncMock(side_effect=evaluate)
        report = await _applier(page).apply_all(_rule_set())

        assert (report.scripts.attempted, report.scripts.succeeded) == (1, 0)

    @pytest.mark.asyncio
    async def test_partially_parsed_css(self) -> None:
        """Test that only rules the browser parsed count as succeeded."""
        page = _page()
        page.add_style_tag.return_value.evaluate = AsyncMock(return_value=1)

        report = await _applier(page).apply_all(_rule_set())
        assert (report.css_inject.attempted, report.css_inject.succeeded) == (2, 1)

    @pytest.mark.asyncio
    async def test_extended_css_unavailable(self) -> None:
        """Test that a missing ExtendedCss library counts as not applied."""
        report = await _applier(_page(), extended=_extended(matched=None)).apply_all(_rule_set())
        assert (report.css_extended.attempted, report.css_extended.succeeded) == (1, 0)

    @pytest.mark.asyncio
    async def test_empty_rule_set(self) -> None:
        """Test that an empty rule set touches nothing."""
        from webshield.models import RuleSet

        page = _page()
        report = await _applier(page).apply_all(RuleSet())

        assert report.totals().attempted == 0
        page.add_style_tag.assert_not_awaited()
        page.add_script_tag.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_forgets_applied_groups(self) -> None:
        """Test that close releases the scope and resets fingerprints."""
        page = _page()
        extended = _extended()
        applier = _applier(page, extended=extended)

        await applier.apply_all(_rule_set())
        assert applier.applied_groups > 0
        await applier.close()

        assert applier.applied_groups == 0
        applier.scope.close.assert_awaited_once()
        extended.dispose.assert_awaited_once()

    def test_wrap_script(self) -> None:
        """Test that the wrapper records success under the execution id."""
        from webshield.page.applier import wrap_script

        wrapped = wrap_script("doThing();", "wsa_script_1")
        assert "doThing();" in wrapped
        assert 'window["wsa_script_1"] = { success: true }' in wrapped
        assert "catch (e)" in wrapped

    def test_fingerprint_is_order_sensitive(self) -> None:
        """Test fingerprint stability and separation."""
        from webshield.page.applier import fingerprint

        assert fingerprint("scripts", ["a", "b"]) == fingerprint("scripts", ["a", "b"])
        assert fingerprint("scripts", ["a", "b"]) != fingerprint("scripts", ["b", "a"])
        assert fingerprint("scripts", ["ab"]) != fingerprint("scripts", ["a", "b"])
        assert fingerprint("cssInject", ["a"]) != fingerprint("scripts", ["a"])


class TestApplicationReport:
    """Tests for the application report."""

    def test_summary(self) -> None:
        """Test totals and per-category rates."""
        from webshield.page.report import ApplicationReport

        report = ApplicationReport(url="https://example.com/")
        report.css_inject.attempted, report.css_inject.succeeded = 4, 3
        report.scriptlets.attempted, report.scriptlets.succeeded = 1, 1

        summary = report.summary()
        assert summary["total"] == {"attempted": 5, "succeeded": 4, "rate": 0.8}
        assert summary["categories"]["cssInject"]["rate"] == 0.75
        assert summary["categories"]["scripts"]["rate"] == 0.0

    def test_unknown_category(self) -> None:
        """Test that unknown wire names raise KeyError."""
        from webshield.page.report import ApplicationReport

        with pytest.raises(KeyError):
            ApplicationReport().category("network")


class TestExtendedCss:
    """Tests for the ExtendedCss integration."""

    def test_format_rules(self) -> None:
        """Test comment removal and default hide declaration."""
        from webshield.page.extended_css import format_extended_rules

        assert format_extended_rules(
            ["", "! comment", ".a:has(.b)", ".c { color: red; }", "  "]
        ) == [".a:has(.b) { display: none !important; }", ".c { color: red; }"]

    @pytest.mark.asyncio
    async def test_library_missing(self) -> None:
        """Test that apply returns None without the library."""
        from webshield.page.extended_css import ExtendedCssIntegration

        page = MagicMock()
        page.evaluate = AsyncMock(return_value=False)
        page.add_script_tag = AsyncMock()

        assert await ExtendedCssIntegration(page).apply([".a { x: y; }"]) is None
        page.add_script_tag.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_loads_library_from_path(self, tmp_path) -> None:
        """Test that a configured library file is injected before use."""
        from webshield.page.extended_css import APPLY_JS, IS_AVAILABLE_JS, ExtendedCssIntegration

        library = tmp_path / "extended-css.js"
        library.write_text("window.ExtendedCss = function () {};")
        available = iter([False, True])

        async def evaluate(script: str, *args: Any) -> Any:
            if script == IS_AVAILABLE_JS:
                return next(available)
            if script == APPLY_JS:
                return 3
            return 1

        page = MagicMock()
        page.evaluate = AsyncMock(side_effect=evaluate)
        page.add_script_tag = AsyncMock()

        integration = ExtendedCssIntegration(page, library)
        assert await integration.apply([".a { x: y; }"]) == 3
        page.add_script_tag.assert_awaited_once_with(path=str(library))
        assert await integration.dispose() == 1
        assert integration.applied_batches == 0


class TestPageShield:
    """Tests for navigation wiring."""

    def _gateway(self) -> MagicMock:
        from webshield.models import RuleSet

        gateway = MagicMock()
        gateway.get_rules = AsyncMock(return_value=RuleSet(css_inject=("a {}",)))
        gateway.report_scriptlet_error = AsyncMock()
        return gateway

    def _page(self) -> MagicMock:
        page = MagicMock()
        page.url = "https://example.com/"
        page.expose_binding = AsyncMock()
        page.add_init_script = AsyncMock()
        return page

    @pytest.mark.asyncio
    async def test_setup_registers_hooks(self) -> None:
        """Test that setup installs the error bridge and listeners."""
        from webshield.page.session import SCRIPTLET_ERROR_BINDING, PageShield

        page = self._page()
        await PageShield(self._gateway(), runtime=MagicMock()).setup_page(page)

        assert page.expose_binding.await_args.args[0] == SCRIPTLET_ERROR_BINDING
        page.add_init_script.assert_awaited_once()
        events = [c.args[0] for c in page.on.call_args_list]
        assert events == ["framenavigated", "close"]

    @pytest.mark.asyncio
    async def test_non_http_page_is_skipped(self) -> None:
        """Test that about:blank never reaches the gateway."""
        from webshield.page.session import PageShield

        gateway = self._gateway()
        report = await PageShield(gateway, runtime=MagicMock()).apply_to_page(
            self._page(), "about:blank"
        )

        assert report.totals().attempted == 0
        gateway.get_rules.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gateway_error_gives_empty_report(self) -> None:
        """Test that a delivery failure is reported, not raised."""
        from webshield.exceptions import GatewayTimeoutError
        from webshield.page.session import PageShield

        gateway = self._gateway()
        gateway.get_rules.side_effect = GatewayTimeoutError("timed out")
        page = self._page()
        shield = PageShield(gateway, runtime=MagicMock())

        report = await shield.apply_to_page(page)

        assert report.error == "timed out"
        assert shield.last_report(page) is report

    @pytest.mark.asyncio
    async def test_navigation_replaces_applier(self) -> None:
        """Test that each main-frame navigation starts with fresh state."""
        from webshield.page.report import ApplicationReport
        from webshield.page.session import PageShield

        gateway = self._gateway()
        page = self._page()

        with patch("webshield.page.session.PageRuleApplier") as applier_cls:
            applier_cls.return_value.apply_all = AsyncMock(return_value=ApplicationReport())
            applier_cls.return_value.close = AsyncMock()
            shield = PageShield(gateway, runtime=MagicMock())
            await shield.setup_page(page)

            await shield.apply_to_page(page)
            await shield.apply_to_page(page)
            assert applier_cls.call_count == 1

            frame = MagicMock()
            frame.parent_frame = None
            frame.page = page
            frame.url = "https://example.com/next"
            await shield._on_frame_navigated(frame)

            assert applier_cls.call_count == 2
            applier_cls.return_value.close.assert_awaited_once()
            gateway.get_rules.assert_awaited_with("https://example.com/next")

            child = MagicMock()
            child.parent_frame = frame
            await shield._on_frame_navigated(child)
            assert applier_cls.call_count == 2

            await shield.close()
            assert applier_cls.return_value.close.await_count == 2

    @pytest.mark.asyncio
    async def test_navigation_racing_close_leaves_no_state(self) -> None:
        """Test that a navigation queued behind teardown does not re-track the page."""
        from webshield.page.session import PageShield

        gateway = self._gateway()
        page = self._page()
        shield = PageShield(gateway, runtime=MagicMock())
        await shield.setup_page(page)
        state = shield._pages[page]

        frame = MagicMock()
        frame.parent_frame = None
        frame.page = page
        frame.url = "https://example.com/next"

        await state.lock.acquire()
        navigation = asyncio.create_task(shield._on_frame_navigated(frame))
        await asyncio.sleep(0)
        teardown = asyncio.create_task(shield.teardown_page(page))
        await asyncio.sleep(0)
        state.lock.release()
        await navigation
        await teardown

        assert page not in shield._pages
        gateway.get_rules.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_page_errors_are_forwarded(self) -> None:
        """Test that in-page scriptlet errors reach the gateway."""
        from webshield.page.session import PageShield

        gateway = self._gateway()
        shield = PageShield(gateway, runtime=MagicMock())

        await shield._on_page_error(
            None, {"scriptletName": "json-prune", "errorMessage": "bad", "url": "https://a.com/"}
        )

        report = gateway.report_scriptlet_error.await_args.args[0]
        assert report.scriptlet_name == "json-prune"
        assert report.url == "https://a.com/"
