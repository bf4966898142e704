"""Proxies for the browser automation objects the driver creates."""

import base64
import fnmatch
import logging
import mimetypes
import re
import threading
from collections.abc import Callable
from collections.abc import Mapping

from driverlink.channel import ChannelOwner
from driverlink.channel import filter_none
from driverlink.events import run_detached
from driverlink.registry import ObjectFactory

logger = logging.getLogger(__name__)


def _to_milliseconds(timeout: float | None) -> float | None:
    """Convert a timeout in seconds to the driver's milliseconds.

    :param timeout: Seconds or ``None``.
    :returns: Milliseconds or ``None``.
    """
    if timeout is None:
        return None
    return timeout * 1000


def serialize_headers(headers: Mapping[str, str]) -> list[dict[str, str]]:
    """Convert a header mapping to the driver's name/value list.

    :param headers: Header mapping.
    :returns: List of ``{"name", "value"}`` entries.
    """
    return [{"name": name, "value": value} for name, value in headers.items()]


def parse_headers(raw_headers: object) -> dict[str, str]:
    """Convert the driver's name/value list to a lower-cased header mapping.

    :param raw_headers: List of ``{"name", "value"}`` entries.
    :returns: Header mapping; later duplicates win.
    """
    headers: dict[str, str] = {}
    if isinstance(raw_headers, list) is False:
        return headers
    for entry in raw_headers:
        if isinstance(entry, dict) is False:
            continue
        headers[str(entry.get("name", "")).lower()] = str(entry.get("value", ""))
    return headers


class Playwright(ChannelOwner):
    """Entry object announced by the driver right after startup."""

    chromium: "BrowserType"
    firefox: "BrowserType"
    webkit: "BrowserType"
    devices: dict[str, dict[str, object]]

    def __init__(
        self,
        parent: ChannelOwner,
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        super().__init__(parent, object_type, guid, initializer)
        self.chromium = initializer["chromium"]
        self.firefox = initializer["firefox"]
        self.webkit = initializer["webkit"]
        self.devices = {}
        for entry in initializer.get("deviceDescriptors", []):
            self.devices[entry["name"]] = dict(entry["descriptor"])

    def stop(self) -> None:
        """Stop the connection to the driver."""
        self.connection.stop()


class BrowserType(ChannelOwner):
    """One browser engine that can be launched."""

    @property
    def name(self) -> str:
        """Return the engine name, e.g. ``"chromium"``.

        :returns: Engine name.
        """
        return str(self.initializer["name"])

    @property
    def executable_path(self) -> str:
        """Return the browser executable the driver uses.

        :returns: Executable path.
        """
        return str(self.initializer.get("executablePath", ""))

    def launch(self, timeout: float | None = None, **options: object) -> "Browser":
        """Launch a browser.

        :param timeout: Seconds allowed for the launch, ``None`` for the default.
        :param options: Launch options using the driver's parameter names.
        :returns: Browser proxy.
        """
        params: dict[str, object] = filter_none(options)
        effective: float = self.timeout_settings.timeout(timeout)
        params["timeout"] = _to_milliseconds(effective)
        return self.channel.send("launch", params)


class Browser(ChannelOwner):
    """A launched browser owning its contexts."""

    _is_connected: bool
    _contexts: list["BrowserContext"]
    _state_lock: threading.Lock

    def __init__(
        self,
        parent: ChannelOwner,
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        super().__init__(parent, object_type, guid, initializer)
        self._is_connected = True
        self._contexts = []
        self._state_lock = threading.Lock()
        self.channel.on("close", self._on_close)

    @property
    def version(self) -> str:
        """Return the browser version reported at launch.

        :returns: Version string.
        """
        return str(self.initializer.get("version", ""))

    @property
    def contexts(self) -> list["BrowserContext"]:
        """Return the open contexts of this browser.

        :returns: Snapshot of the context list.
        """
        with self._state_lock:
            return list(self._contexts)

    def is_connected(self) -> bool:
        """Report whether the browser is still connected.

        :returns: ``False`` once the driver announced the browser closed.
        """
        with self._state_lock:
            return self._is_connected

    def _add_context(self, context: "BrowserContext") -> None:
        with self._state_lock:
            if context not in self._contexts:
                self._contexts.append(context)

    def _remove_context(self, context: "BrowserContext") -> None:
        with self._state_lock:
            if context in self._contexts:
                self._contexts.remove(context)

    def _on_close(self, params: object) -> None:
        _ = params
        with self._state_lock:
            self._is_connected = False
        self.emit("close")

    def new_context(self, **options: object) -> "BrowserContext":
        """Create an isolated browser context.

        :param options: Context options using the driver's parameter names.
        :returns: Context proxy.
        """
        context: BrowserContext = self.channel.send("newContext", filter_none(options))
        self._add_context(context)
        return context

    def new_page(self, **options: object) -> "Page":
        """Create a page in a new context that closes together with the page.

        :param options: Context options using the driver's parameter names.
        :returns: Page proxy.
        """
        context: BrowserContext = self.new_context(**options)
        page: Page = context.new_page()
        page._owned_context = context
        context._owned_page = page
        return page

    def close(self) -> None:
        """Close the browser and all of its contexts.

        :raises DriverLinkRemoteError: If the driver rejects the call.
        """
        self.channel.send("close")


class _RouteHandlerEntry:
    """A URL matcher paired with the handler that decides matching requests."""

    url: "str | re.Pattern[str] | Callable[[str], bool]"
    handler: "Callable[[Route, Request], object]"

    def __init__(
        self,
        url: "str | re.Pattern[str] | Callable[[str], bool]",
        handler: "Callable[[Route, Request], object]",
    ) -> None:
        """Initialize an entry.

        :param url: Glob string, compiled regular expression, or predicate.
        :param handler: Callable receiving the route and its request.
        """
        self.url = url
        self.handler = handler

    def matches(self, request_url: str) -> bool:
        """Report whether ``request_url`` is covered by this entry.

        Glob strings use :func:`fnmatch.fnmatchcase`, where ``*`` also
        crosses ``/``.

        :param request_url: URL of the intercepted request.
        :returns: ``True`` on a match.
        """
        if isinstance(self.url, str) is True:
            return fnmatch.fnmatchcase(request_url, self.url)
        if isinstance(self.url, re.Pattern) is True:
            return self.url.search(request_url) is not None
        return bool(self.url(request_url))


class BrowserContext(ChannelOwner):
    """An isolated browser session holding pages.

    Channel ``page`` events register the page and are re-emitted as
    ``"page"``. An intercepted request goes to the first handler registered
    with :meth:`route` whose URL matcher accepts it; failing that it is
    re-emitted as ``"route"``; with no listener either, it is continued.
    Route handlers and the fallback continue run on their own threads so the
    event thread never waits for a routing decision.
    """

    _pages: list["Page"]
    _routes: list[_RouteHandlerEntry]
    _state_lock: threading.Lock
    _is_closed_or_closing: bool
    _owned_page: "Page | None"

    def __init__(
        self,
        parent: ChannelOwner,
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        super().__init__(parent, object_type, guid, initializer)
        self._pages = []
        self._routes = []
        self._state_lock = threading.Lock()
        self._is_closed_or_closing = False
        self._owned_page = None
        if isinstance(parent, Browser) is True:
            parent._add_context(self)
        self.channel.on("page", self._on_page)
        self.channel.on("route", self._on_route)
        self.channel.on("close", self._on_close)

    @property
    def browser(self) -> Browser | None:
        """Return the owning browser; persistent contexts have none.

        :returns: Browser proxy or ``None``.
        """
        parent: ChannelOwner | None = self.parent
        if isinstance(parent, Browser) is True:
            return parent
        return None

    @property
    def pages(self) -> list["Page"]:
        """Return the open pages of this context in creation order.

        :returns: Snapshot of the page list.
        """
        with self._state_lock:
            return list(self._pages)

    def _on_page(self, params: Mapping[str, object]) -> None:
        page: Page = params["page"]
        with self._state_lock:
            self._pages.append(page)
        self.emit("page", page)

    def _remove_page(self, page: "Page") -> None:
        with self._state_lock:
            if page in self._pages:
                self._pages.remove(page)

    def _on_route(self, params: Mapping[str, object]) -> None:
        route: Route = params["route"]
        request: Request = params.get("request") or route.request
        with self._state_lock:
            entries: list[_RouteHandlerEntry] = list(self._routes)
        for entry in entries:
            if entry.matches(request.url) is True:
                run_detached(entry.handler, route, request)
                return
        if self.emit("route", route) is False:
            logger.debug("No route handler on %s, continuing %s", self.guid, route.guid)
            run_detached(route.continue_)

    def route(
        self,
        url: "str | re.Pattern[str] | Callable[[str], bool]",
        handler: "Callable[[Route, Request], object]",
    ) -> None:
        """Intercept requests whose URL matches ``url``.

        Request interception is enabled on the driver with the first
        registered route. Earlier registrations win when several match.

        :param url: Glob string, compiled regular expression, or predicate
            taking the request URL.
        :param handler: Callable receiving the route and its request; it must
            fulfill, continue, or abort the route.
        """
        with self._state_lock:
            self._routes.append(_RouteHandlerEntry(url, handler))
            first: bool = len(self._routes) == 1
        if first is True:
            self.channel.send("setNetworkInterceptionEnabled", {"enabled": True})

    def unroute(
        self,
        url: "str | re.Pattern[str] | Callable[[str], bool]",
        handler: "Callable[[Route, Request], object] | None" = None,
    ) -> None:
        """Remove routes registered for ``url``.

        Interception is disabled on the driver once no route remains.

        :param url: The matcher passed to :meth:`route`.
        :param handler: Only remove this handler; ``None`` removes all of ``url``.
        """
        with self._state_lock:
            before: int = len(self._routes)
            self._routes = [
                entry
                for entry in self._routes
                if entry.url != url or (handler is not None and entry.handler != handler)
            ]
            emptied: bool = before > 0 and len(self._routes) == 0
        if emptied is True:
            self.channel.send("setNetworkInterceptionEnabled", {"enabled": False})

    def _on_close(self, params: object) -> None:
        _ = params
        with self._state_lock:
            self._is_closed_or_closing = True
        browser: Browser | None = self.browser
        if browser is not None:
            browser._remove_context(self)
        self.emit("close")

    def new_page(self) -> "Page":
        """Open a new page in this context.

        :returns: Page proxy.
        """
        return self.channel.send("newPage")

    def set_default_timeout(self, timeout: float | None) -> None:
        """Set the default timeout locally and on the driver.

        :param timeout: Seconds, ``0`` for no limit, ``None`` to inherit again.
        """
        self.timeout_settings.set_default_timeout(timeout)
        self.channel.send_no_reply(
            "setDefaultTimeoutNoReply",
            filter_none({"timeout": _to_milliseconds(timeout)}),
        )

    def set_default_navigation_timeout(self, timeout: float | None) -> None:
        """Set the default navigation timeout locally and on the driver.

        :param timeout: Seconds, ``0`` for no limit, ``None`` to inherit again.
        """
        self.timeout_settings.set_default_navigation_timeout(timeout)
        self.channel.send_no_reply(
            "setDefaultNavigationTimeoutNoReply",
            filter_none({"timeout": _to_milliseconds(timeout)}),
        )

    def close(self) -> None:
        """Close the context; repeated calls do nothing."""
        with self._state_lock:
            if self._is_closed_or_closing is True:
                return
            self._is_closed_or_closing = True
        self.channel.send("close")


class Page(ChannelOwner):
    """A browser tab.

    Re-emits ``close``, ``crash``, ``load`` and ``domcontentloaded`` from its
    channel.
    """

    _is_closed: bool
    _state_lock: threading.Lock
    _owned_context: BrowserContext | None

    def __init__(
        self,
        parent: ChannelOwner,
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        super().__init__(parent, object_type, guid, initializer)
        self._is_closed = False
        self._state_lock = threading.Lock()
        self._owned_context = None
        self.channel.on("close", self._on_close)
        self.channel.on("crash", lambda params: self.emit("crash"))
        self.channel.on("load", lambda params: self.emit("load"))
        self.channel.on("domcontentloaded", lambda params: self.emit("domcontentloaded"))

    @property
    def context(self) -> BrowserContext | None:
        """Return the context this page belongs to.

        :returns: Context proxy or ``None``.
        """
        parent: ChannelOwner | None = self.parent
        if isinstance(parent, BrowserContext) is True:
            return parent
        return None

    @property
    def main_frame(self) -> "Frame | None":
        """Return the top-level frame.

        :returns: Frame proxy or ``None`` when the driver sent none.
        """
        frame: object = self.initializer.get("mainFrame")
        if isinstance(frame, Frame) is True:
            return frame
        return None

    @property
    def url(self) -> str:
        """Return the main frame URL.

        :returns: URL, empty before the first navigation.
        """
        frame: Frame | None = self.main_frame
        if frame is None:
            return ""
        return frame.url

    def is_closed(self) -> bool:
        """Report whether the page has closed.

        :returns: ``True`` after the ``close`` event.
        """
        with self._state_lock:
            return self._is_closed

    def _on_close(self, params: object) -> None:
        _ = params
        with self._state_lock:
            self._is_closed = True
        context: BrowserContext | None = self.context
        if context is not None:
            context._remove_page(self)
        self.emit("close")

    def set_default_timeout(self, timeout: float | None) -> None:
        """Set the default timeout locally and on the driver.

        :param timeout: Seconds, ``0`` for no limit, ``None`` to inherit again.
        """
        self.timeout_settings.set_default_timeout(timeout)
        self.channel.send_no_reply(
            "setDefaultTimeoutNoReply",
            filter_none({"timeout": _to_milliseconds(timeout)}),
        )

    def goto(self, url: str, timeout: float | None = None, wait_until: str | None = None) -> "Response | None":
        """Navigate the main frame.

        :param url: Target URL.
        :param timeout: Navigation timeout in seconds; defaults to the settings.
        :param wait_until: Load state to wait for, e.g. ``"load"``.
        :returns: Main resource response, ``None`` for same-document navigations.
        """
        frame: Frame | None = self.main_frame
        target: ChannelOwner = self
        if frame is not None:
            target = frame
        params: dict[str, object] = filter_none(
            {
                "url": url,
                "timeout": _to_milliseconds(self.timeout_settings.navigation_timeout(timeout)),
                "waitUntil": wait_until,
            }
        )
        return target.channel.send("goto", params)

    def title(self) -> str:
        """Return the document title of the main frame.

        :returns: Title.
        """
        frame: Frame | None = self.main_frame
        if frame is not None:
            return str(frame.channel.send("title"))
        return str(self.channel.send("title"))

    def close(self, run_before_unload: bool | None = None) -> None:
        """Close the page, and its context when the page owns it.

        :param run_before_unload: Run ``beforeunload`` handlers first.
        """
        self.channel.send("close", filter_none({"runBeforeUnload": run_before_unload}))
        if self._owned_context is not None:
            self._owned_context.close()


class Route(ChannelOwner):
    """An intercepted request awaiting a decision."""

    @property
    def request(self) -> "Request":
        """Return the intercepted request.

        :returns: Request proxy.
        """
        return self.initializer["request"]

    def abort(self, error_code: str | None = None) -> None:
        """Fail the request.

        :param error_code: Network error name, e.g. ``"failed"`` or ``"aborted"``.
        """
        self.channel.send("abort", filter_none({"errorCode": error_code}))

    def continue_(
        self,
        url: str | None = None,
        method: str | None = None,
        headers: Mapping[str, str] | None = None,
        post_data: str | bytes | None = None,
    ) -> None:
        """Let the request through, optionally overriding parts of it.

        :param url: Replacement URL.
        :param method: Replacement HTTP method.
        :param headers: Replacement headers.
        :param post_data: Replacement body.
        """
        overrides: dict[str, object] = filter_none({"url": url, "method": method})
        if headers is not None:
            overrides["headers"] = serialize_headers(headers)
        if post_data is not None:
            raw: bytes = post_data.encode("utf-8") if isinstance(post_data, str) else post_data
            overrides["postData"] = base64.b64encode(raw).decode("ascii")
        self.channel.send("continue", overrides)

    def fulfill(
        self,
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
        body: str | bytes | None = None,
        path: str | None = None,
        content_type: str | None = None,
    ) -> None:
        """Answer the request with a synthetic response.

        Byte bodies and files are sent base64-encoded with a computed
        ``content-length``; header names are lower-cased.

        :param status: HTTP status code.
        :param headers: Response headers.
        :param body: Response body.
        :param path: File whose contents become the body.
        :param content_type: Content type, guessed from ``path`` when omitted.
        """
        length: int = 0
        is_base64: bool = False
        wire_body: str | None = None
        guessed_type: str | None = None
        if isinstance(body, str) is True:
            wire_body = body
        elif isinstance(body, bytes) is True:
            wire_body = base64.b64encode(body).decode("ascii")
            length = len(body)
            is_base64 = True
        elif path is not None:
            with open(path, "rb") as body_file:
                content: bytes = body_file.read()
            wire_body = base64.b64encode(content).decode("ascii")
            length = len(content)
            is_base64 = True
            guessed_type = mimetypes.guess_type(path)[0] or "application/octet-stream"

        wire_headers: dict[str, str] = {}
        if headers is not None:
            for name, value in headers.items():
                wire_headers[name.lower()] = value
        if content_type is not None:
            wire_headers["content-type"] = content_type
        elif guessed_type is not None:
            wire_headers["content-type"] = guessed_type
        if "content-length" not in wire_headers and length > 0:
            wire_headers["content-length"] = str(length)

        params: dict[str, object] = filter_none({"status": status, "body": wire_body})
        params["isBase64"] = is_base64
        params["headers"] = serialize_headers(wire_headers)
        self.channel.send("fulfill", params)


class Request(ChannelOwner):
    """A network request issued by a page; read-only."""

    @property
    def url(self) -> str:
        """Return the request URL.

        :returns: URL.
        """
        return str(self.initializer.get("url", ""))

    @property
    def method(self) -> str:
        """Return the HTTP method, e.g. ``"GET"``.

        :returns: Method name.
        """
        return str(self.initializer.get("method", ""))

    @property
    def resource_type(self) -> str:
        """Return the resource type the browser assigned, e.g. ``"document"``.

        :returns: Resource type.
        """
        return str(self.initializer.get("resourceType", ""))

    @property
    def headers(self) -> dict[str, str]:
        """Return the request headers with lower-cased names.

        :returns: Header mapping.
        """
        return parse_headers(self.initializer.get("headers"))

    @property
    def post_data(self) -> bytes | None:
        """Return the decoded request body.

        :returns: Body bytes, ``None`` when the request has no body.
        """
        raw: object = self.initializer.get("postData")
        if raw is None:
            return None
        return base64.b64decode(str(raw))


class Response(ChannelOwner):
    """The response received for a :class:`Request`."""

    @property
    def url(self) -> str:
        """Return the response URL.

        :returns: URL.
        """
        return str(self.initializer.get("url", ""))

    @property
    def status(self) -> int:
        """Return the HTTP status code.

        :returns: Status code, ``0`` for responses not served over HTTP.
        """
        return int(self.initializer.get("status", 0))

    @property
    def status_text(self) -> str:
        """Return the HTTP reason phrase.

        :returns: Reason phrase, e.g. ``"OK"``.
        """
        return str(self.initializer.get("statusText", ""))

    @property
    def ok(self) -> bool:
        """Report whether the status is ``0`` or in the 2xx range.

        :returns: ``True`` for a successful response.
        """
        return self.status == 0 or 200 <= self.status <= 299

    @property
    def headers(self) -> dict[str, str]:
        """Return the response headers with lower-cased names.

        :returns: Header mapping.
        """
        return parse_headers(self.initializer.get("headers"))

    @property
    def request(self) -> Request:
        """Return the request this response answers.

        :returns: Request proxy.
        """
        return self.initializer["request"]

    def body(self) -> bytes:
        """Fetch the response body from the driver.

        :returns: Body bytes.
        :raises DriverLinkRemoteError: If the body is no longer available.
        """
        return base64.b64decode(str(self.channel.send("body")))


class Frame(ChannelOwner):
    """A frame; tracks its URL through ``navigated`` events."""

    _url: str
    _url_lock: threading.Lock

    def __init__(
        self,
        parent: ChannelOwner,
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        super().__init__(parent, object_type, guid, initializer)
        self._url = str(initializer.get("url", ""))
        self._url_lock = threading.Lock()
        self.channel.on("navigated", self._on_navigated)

    @property
    def name(self) -> str:
        """Return the frame's ``name`` attribute.

        :returns: Name, empty for the main frame.
        """
        return str(self.initializer.get("name", ""))

    @property
    def url(self) -> str:
        """Return the URL of the last navigation.

        :returns: URL.
        """
        with self._url_lock:
            return self._url

    def _on_navigated(self, params: Mapping[str, object]) -> None:
        with self._url_lock:
            self._url = str(params.get("url", self._url))
        self.emit("navigated", params)


class ConsoleMessage(ChannelOwner):
    """A message a page wrote to its console."""

    @property
    def type(self) -> str:
        """Return the console method, e.g. ``"log"`` or ``"error"``.

        :returns: Message type.
        """
        return str(self.initializer.get("type", ""))

    @property
    def text(self) -> str:
        """Return the formatted message text.

        :returns: Text.
        """
        return str(self.initializer.get("text", ""))

    @property
    def location(self) -> Mapping[str, object]:
        """Return the source location with ``url``, ``lineNumber`` and ``columnNumber``.

        :returns: Location mapping.
        """
        return self.initializer.get("location", {})


class Dialog(ChannelOwner):
    """An ``alert``, ``confirm``, ``prompt`` or ``beforeunload`` dialog."""

    @property
    def type(self) -> str:
        """Return the dialog kind.

        :returns: Dialog type.
        """
        return str(self.initializer.get("type", ""))

    @property
    def message(self) -> str:
        """Return the text shown in the dialog.

        :returns: Message.
        """
        return str(self.initializer.get("message", ""))

    @property
    def default_value(self) -> str:
        """Return the prefilled value of a ``prompt``.

        :returns: Default value, empty for other dialogs.
        """
        return str(self.initializer.get("defaultValue", ""))


class Download(ChannelOwner):
    """A file download started by a page."""

    @property
    def url(self) -> str:
        """Return the downloaded URL.

        :returns: URL.
        """
        return str(self.initializer.get("url", ""))

    @property
    def suggested_filename(self) -> str:
        """Return the file name the browser proposes.

        :returns: File name.
        """
        return str(self.initializer.get("suggestedFilename", ""))


class JSHandle(ChannelOwner):
    """A reference to a JavaScript value living in the page."""

    @property
    def preview(self) -> str:
        """Return the driver's short textual rendering of the value.

        :returns: Preview text.
        """
        return str(self.initializer.get("preview", ""))


class ElementHandle(JSHandle):
    """A :class:`JSHandle` that points at a DOM element."""


class Worker(ChannelOwner):
    """A web or service worker."""

    @property
    def url(self) -> str:
        """Return the worker script URL.

        :returns: URL.
        """
        return str(self.initializer.get("url", ""))


class BindingCall(ChannelOwner):
    """A call from page script into a function exposed by the client."""

    @property
    def name(self) -> str:
        """Return the name of the exposed function.

        :returns: Binding name.
        """
        return str(self.initializer.get("name", ""))


class Selectors(ChannelOwner):
    """Registry of custom selector engines; carries no client state."""


DEFAULT_OBJECT_FACTORIES: dict[str, ObjectFactory] = {
    "BindingCall": BindingCall,
    "Browser": Browser,
    "BrowserContext": BrowserContext,
    "BrowserType": BrowserType,
    "ConsoleMessage": ConsoleMessage,
    "Dialog": Dialog,
    "Download": Download,
    "ElementHandle": ElementHandle,
    "Frame": Frame,
    "JSHandle": JSHandle,
    "Page": Page,
    "Playwright": Playwright,
    "Request": Request,
    "Response": Response,
    "Route": Route,
    "Selectors": Selectors,
    "Worker": Worker,
}
