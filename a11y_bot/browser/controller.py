import asyncio
import json
import logging
import uuid
from typing import Callable, Optional, Sequence

from playwright.async_api import CDPSession, Error as PlaywrightError, Frame, Page

from a11y_bot.browser import scripts
from a11y_bot.browser.channel import (
    Capabilities,
    ControlChannel,
    DomMutation,
    ElementInfo,
    Rect,
    Session,
    Unsubscribe,
    Viewport,
    channel_operation,
)
from a11y_bot.browser.session_pool import SessionPool
from a11y_bot.errors import ElementNotFound, ProtocolError, SessionLost, SessionUnavailable


logger = logging.getLogger(__name__)

MUTATION_BINDING = "__a11yBotMutations"

# Messages meaning the target itself is gone, not just this command
_LOST_MARKERS = ("closed", "target crashed", "execution context was destroyed")


def translate_playwright_error(error: PlaywrightError) -> Exception:
    """Map a Playwright error onto the session or action error taxonomy."""
    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in _LOST_MARKERS):
        return SessionLost(message)
    return ProtocolError(message)


# Playwright modifier names; CDP touch events need no modifiers
_MODIFIER_NAMES = {"shift": "Shift", "ctrl": "Control", "control": "Control", "alt": "Alt", "meta": "Meta", "cmd": "Meta"}


class PlaywrightControlChannel(ControlChannel):
    """
    Control channel backed by a Playwright Page plus a raw CDP session.

    Input goes through Playwright's keyboard/mouse (which dispatch CDP Input
    events), touch and dedicated style sheets go through the CDP session,
    and introspection runs small scripts in the page.

    The target counts as lost when the page closes or crashes, or when a new
    document loads that this channel did not navigate to itself.
    """

    def __init__(self, pool: SessionPool):
        super().__init__()
        self._pool = pool
        self._page: Optional[Page] = None
        self._cdp: Optional[CDPSession] = None
        self._frame_id: Optional[str] = None
        self._navigating = False
        self._style_sheets: set[str] = set()
        self._route_callbacks: list[Callable[[str], None]] = []
        self._mutation_callbacks: list[Callable[[list[DomMutation]], None]] = []

    @property
    def page(self) -> Optional[Page]:
        """Get the underlying Playwright page."""
        return self._page

    # ===== Session =====

    async def connect(self, tab_id: int) -> Session:
        if self._session is not None:
            raise SessionUnavailable("Channel already attached; disconnect first")

        page = await self._pool.acquire(tab_id)
        cdp = None
        try:
            cdp = await page.context.new_cdp_session(page)
            capabilities = await self._negotiate_capabilities(cdp)
            self._page = page
            self._cdp = cdp
            self._lost_reason = None
            self._setup_listeners()
            await self._install_mutation_observer()
        except Exception as e:
            await self._abandon_attach(tab_id, cdp)
            if isinstance(e, PlaywrightError):
                raise SessionUnavailable(f"Could not open protocol session for tab {tab_id}: {e}") from e
            raise

        self._session = Session(
            session_id=f"session-{uuid.uuid4().hex[:12]}",
            tab_id=tab_id,
            url=page.url,
            capabilities=capabilities,
        )
        logger.info(f"Attached to tab {tab_id} ({page.url}) with {capabilities.to_dict()}")
        return self._session

    async def _abandon_attach(self, tab_id: int, cdp: Optional[CDPSession]) -> None:
        """Undo a half-finished connect so the tab can be attached again."""
        if self._page is not None:
            self._remove_listeners()
        if cdp is not None:
            try:
                await cdp.detach()
            except PlaywrightError as e:
                logger.debug(f"CDP detach failed (target probably gone): {e}")
        await self._pool.release(tab_id)
        self._page = None
        self._cdp = None
        self._frame_id = None

    async def _negotiate_capabilities(self, cdp: CDPSession) -> Capabilities:
        """Enable the protocol domains we rely on; a domain that refuses is a missing capability."""
        enabled = {}
        for domain in ("DOM", "CSS", "Page"):
            try:
                await cdp.send(f"{domain}.enable")
                enabled[domain] = True
            except PlaywrightError as e:
                logger.warning(f"{domain}.enable refused: {e}")
                enabled[domain] = False

        if enabled["Page"]:
            frame_tree = await cdp.send("Page.getFrameTree")
            self._frame_id = frame_tree["frameTree"]["frame"]["id"]

        return Capabilities(
            can_simulate_input=True,
            can_inject_style=enabled["CSS"] and self._frame_id is not None,
            can_modify_dom=enabled["DOM"],
            can_capture_screenshots=enabled["Page"],
        )

    async def disconnect(self) -> None:
        if self._session is None:
            return

        tab_id = self._session.tab_id
        if self._page:
            self._remove_listeners()
        if self._cdp:
            try:
                await self._cdp.detach()
            except PlaywrightError as e:
                logger.debug(f"CDP detach failed (target probably gone): {e}")

        await self._pool.release(tab_id)
        self._page = None
        self._cdp = None
        self._frame_id = None
        self._style_sheets.clear()
        self._route_callbacks.clear()
        self._mutation_callbacks.clear()
        self._session = None
        self._lost_reason = None
        logger.info(f"Detached from tab {tab_id}")

    def _setup_listeners(self):
        self._page.on("close", self._on_close)
        self._page.on("crash", self._on_crash)
        self._page.on("domcontentloaded", self._on_document_loaded)
        self._page.on("framenavigated", self._on_frame_navigated)

    def _remove_listeners(self):
        self._page.remove_listener("close", self._on_close)
        self._page.remove_listener("crash", self._on_crash)
        self._page.remove_listener("domcontentloaded", self._on_document_loaded)
        self._page.remove_listener("framenavigated", self._on_frame_navigated)

    def _on_close(self, page: Page):
        self._mark_lost("Target page closed")

    def _on_crash(self, page: Page):
        self._mark_lost("Target page crashed")

    def _on_document_loaded(self, page: Page):
        if not self._navigating:
            self._mark_lost(f"Target navigated away to {page.url}")

    def _on_frame_navigated(self, frame: Frame):
        if self._page is None or frame != self._page.main_frame:
            return
        for callback in list(self._route_callbacks):
            callback(frame.url)

    async def _install_mutation_observer(self):
        try:
            await self._page.expose_binding(MUTATION_BINDING, self._on_mutation_binding)
        except PlaywrightError as e:
            # Binding and init script survive from an earlier attach to the same page
            logger.debug(f"Mutation binding already present: {e}")
        else:
            init_script = f"({scripts.MUTATION_OBSERVER})({json.dumps(MUTATION_BINDING)})"
            await self._page.add_init_script(init_script)
        await self._page.evaluate(scripts.MUTATION_OBSERVER, MUTATION_BINDING)

    def _on_mutation_binding(self, source, payload):
        if not self._mutation_callbacks:
            return
        mutations = [
            DomMutation(
                kind=record.get("kind", ""),
                selector=record.get("selector") or "",
                tag=record.get("tag") or "",
                interactive=bool(record.get("interactive")),
                attribute=record.get("attribute"),
                text_only=bool(record.get("text_only")),
            )
            for record in payload or []
        ]
        for callback in list(self._mutation_callbacks):
            callback(mutations)

    def _translate_error(self, error: PlaywrightError) -> Exception:
        translated = translate_playwright_error(error)
        if isinstance(translated, SessionLost):
            self._mark_lost(f"Target unavailable: {error}")
        return translated

    async def _evaluate(self, script: str, arg=None):
        try:
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    async def _send(self, method: str, params: Optional[dict] = None):
        try:
            return await self._cdp.send(method, params or {})
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    async def _rect(self, selector: str) -> Optional[Rect]:
        data = await self._evaluate(scripts.BOUNDING_RECT, selector)
        if data is None:
            return None
        return Rect(x=data["x"], y=data["y"], width=data["width"], height=data["height"])

    # ===== Input =====

    @channel_operation(capability="can_simulate_input")
    async def press_key(self, key: str, modifiers: Sequence[str] = ()) -> None:
        combo = "+".join([_MODIFIER_NAMES.get(m.lower(), m) for m in modifiers] + [key])
        logger.debug(f"Key press: {combo}")
        try:
            await self._page.keyboard.press(combo)
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    @channel_operation(capability="can_simulate_input")
    async def type_text(self, text: str) -> None:
        try:
            await self._page.keyboard.type(text, delay=20)
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    @channel_operation(capability="can_simulate_input")
    async def mouse_click(self, x: float, y: float, button: str = "left") -> None:
        try:
            await self._page.mouse.click(x, y, button=button)
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    @channel_operation(capability="can_simulate_input")
    async def mouse_move(self, x: float, y: float) -> None:
        try:
            await self._page.mouse.move(x, y)
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    @channel_operation(capability="can_simulate_input")
    async def drag(self, start: tuple[float, float], end: tuple[float, float]) -> None:
        try:
            await self._page.mouse.move(start[0], start[1])
            await self._page.mouse.down()
            await self._page.mouse.move(end[0], end[1], steps=10)
            await self._page.mouse.up()
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    @channel_operation(capability="can_simulate_input")
    async def tap(self, x: float, y: float) -> None:
        point = [{"x": x, "y": y}]
        await self._send("Input.dispatchTouchEvent", {"type": "touchStart", "touchPoints": point})
        await self._send("Input.dispatchTouchEvent", {"type": "touchEnd", "touchPoints": []})

    @channel_operation(capability="can_simulate_input")
    async def swipe(self, start: tuple[float, float], end: tuple[float, float], steps: int = 8) -> None:
        await self._send("Input.dispatchTouchEvent", {
            "type": "touchStart", "touchPoints": [{"x": start[0], "y": start[1]}],
        })
        for step in range(1, steps + 1):
            x = start[0] + (end[0] - start[0]) * step / steps
            y = start[1] + (end[1] - start[1]) * step / steps
            await self._send("Input.dispatchTouchEvent", {"type": "touchMove", "touchPoints": [{"x": x, "y": y}]})
            await asyncio.sleep(0.016)
        await self._send("Input.dispatchTouchEvent", {"type": "touchEnd", "touchPoints": []})

    # ===== Introspection =====

    @channel_operation
    async def query_selector_all(self, selector: str) -> list[str]:
        return await self._evaluate(scripts.QUERY_ALL, selector) or []

    @channel_operation
    async def describe_element(self, selector: str) -> Optional[ElementInfo]:
        data = await self._evaluate(scripts.DESCRIBE_ELEMENT, selector)
        if data is None:
            return None
        return ElementInfo(
            selector=data["selector"],
            tag=data["tag"],
            tab_index=int(data["tab_index"]),
            attributes=data.get("attributes") or {},
            text=data.get("text") or "",
            parent_selector=data.get("parent_selector"),
            sibling_count=int(data.get("sibling_count") or 0),
            ancestor_tags=tuple(data.get("ancestor_tags") or ()),
            has_label=bool(data.get("has_label")),
        )

    @channel_operation
    async def computed_style(self, selector: str, properties: Sequence[str]) -> dict[str, str]:
        style = await self._evaluate(scripts.COMPUTED_STYLE, [selector, list(properties)])
        if style is None:
            raise ElementNotFound(selector)
        return style

    @channel_operation
    async def bounding_rect(self, selector: str) -> Optional[Rect]:
        return await self._rect(selector)

    @channel_operation
    async def active_element(self) -> Optional[str]:
        return await self._evaluate(scripts.ACTIVE_ELEMENT)

    @channel_operation
    async def viewport_size(self) -> Viewport:
        size = self._page.viewport_size
        if size:
            return Viewport(width=size["width"], height=size["height"])
        data = await self._evaluate(scripts.VIEWPORT_SIZE)
        return Viewport(width=int(data["width"]), height=int(data["height"]))

    @channel_operation
    async def focus(self, selector: str) -> bool:
        focused = await self._evaluate(scripts.FOCUS, selector)
        if focused is None:
            raise ElementNotFound(selector)
        return bool(focused)

    @channel_operation
    async def blur(self) -> None:
        await self._evaluate(scripts.RESET_FOCUS)

    # ===== Page =====

    @channel_operation
    async def navigate(self, url: str) -> None:
        self._navigating = True
        try:
            await self._page.goto(url, wait_until="domcontentloaded")
        except PlaywrightError as e:
            raise self._translate_error(e) from e
        finally:
            self._navigating = False
        # New document, new frame id for CDP style sheets
        if self.capabilities.can_inject_style:
            frame_tree = await self._send("Page.getFrameTree")
            self._frame_id = frame_tree["frameTree"]["frame"]["id"]
        self._style_sheets.clear()

    @channel_operation
    async def current_url(self) -> str:
        return self._page.url

    @channel_operation
    async def is_loading(self) -> bool:
        return bool(await self._evaluate(scripts.IS_LOADING))

    @channel_operation(capability="can_capture_screenshots")
    async def screenshot(self, selector: Optional[str] = None) -> bytes:
        """
        Capture a PNG of the viewport, or of one element.

        Args:
            selector: When given, the capture is clipped to the element's box

        Returns:
            PNG image bytes
        """
        clip = None
        if selector:
            rect = await self._rect(selector)
            if rect is None or rect.area == 0:
                raise ElementNotFound(selector)
            clip = {"x": max(rect.x, 0), "y": max(rect.y, 0), "width": rect.width, "height": rect.height}
        try:
            return await self._page.screenshot(type="png", clip=clip)
        except PlaywrightError as e:
            raise self._translate_error(e) from e

    # ===== Style =====

    @channel_operation(capability="can_inject_style")
    async def add_style_sheet(self, css: str) -> str:
        created = await self._send("CSS.createStyleSheet", {"frameId": self._frame_id})
        sheet_id = created["styleSheetId"]
        await self._send("CSS.setStyleSheetText", {"styleSheetId": sheet_id, "text": css})
        self._style_sheets.add(sheet_id)
        return sheet_id

    @channel_operation(capability="can_inject_style")
    async def remove_style_sheet(self, sheet_id: str) -> None:
        # Inspector sheets cannot be deleted, only emptied
        await self._send("CSS.setStyleSheetText", {"styleSheetId": sheet_id, "text": ""})
        self._style_sheets.discard(sheet_id)

    @channel_operation(capability="can_modify_dom")
    async def insert_rules(self, owner_id: str, rules: Sequence[str]) -> str:
        return await self._evaluate(scripts.INSERT_RULES, [owner_id, list(rules)])

    @channel_operation(capability="can_modify_dom")
    async def remove_rules(self, handle: str) -> None:
        removed = await self._evaluate(scripts.REMOVE_RULES, handle)
        if not removed:
            raise RuntimeError(f"Style element {handle} is still present")

    @channel_operation(capability="can_modify_dom")
    async def set_inline_style(self, selector: str, declarations: dict[str, str]) -> dict[str, str]:
        previous = await self._evaluate(scripts.SET_INLINE_STYLE, [selector, declarations])
        if previous is None:
            raise ElementNotFound(selector)
        return previous

    @channel_operation(capability="can_modify_dom")
    async def restore_inline_style(self, selector: str, previous: dict[str, str]) -> None:
        if not await self._evaluate(scripts.RESTORE_INLINE_STYLE, [selector, previous]):
            raise ElementNotFound(selector)

    @channel_operation(capability="can_modify_dom")
    async def set_attribute(self, selector: str, name: str, value: str) -> Optional[str]:
        result = await self._evaluate(scripts.SET_ATTRIBUTE, [selector, name, value])
        if not result["found"]:
            raise ElementNotFound(selector)
        return result["previous"]

    @channel_operation(capability="can_modify_dom")
    async def remove_attribute(self, selector: str, name: str) -> None:
        if not await self._evaluate(scripts.REMOVE_ATTRIBUTE, [selector, name]):
            raise ElementNotFound(selector)

    @channel_operation
    async def count_style_rules(self) -> int:
        return int(await self._evaluate(scripts.COUNT_STYLE_RULES))

    # ===== Events =====

    def on_route_change(self, callback: Callable[[str], None]) -> Unsubscribe:
        self._route_callbacks.append(callback)

        def unsubscribe():
            if callback in self._route_callbacks:
                self._route_callbacks.remove(callback)
        return unsubscribe

    def on_dom_mutation(self, callback: Callable[[list[DomMutation]], None]) -> Unsubscribe:
        self._mutation_callbacks.append(callback)

        def unsubscribe():
            if callback in self._mutation_callbacks:
                self._mutation_callbacks.remove(callback)
        return unsubscribe
