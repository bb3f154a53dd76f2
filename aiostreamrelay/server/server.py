"""HTTP server broadcasting the encoded input to any number of listeners."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Awaitable, Callable
from contextlib import suppress

from aiohttp import web
from zeroconf import InterfaceChoice, IPVersion, NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aiostreamrelay.models import RelayConfig
from aiostreamrelay.util import get_advertise_addresses

from .frame_stream import FrameStream
from .relay import FrameRelay
from .session import ClientSession
from .source import AVFrameSource, FrameSource
from .supervisor import EncodeSupervisor, SourceFactory

logger = logging.getLogger(__name__)

NOT_FOUND_BODY = "<h1>404 Not found</h1>"
CACHE_CONTROL = "no-cache, no-store, must-revalidate"
MDNS_SERVICE_TYPE = "_http._tcp.local."

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def _log_request(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Log every incoming request."""
    logger.info(
        "%s %s %s (content length %s)",
        request.method,
        request.remote,
        request.path,
        request.content_length,
    )
    return await handler(request)


class RelayServer:
    """
    Serves the encoded input on GET /audio.

    The encoder only runs while at least one listener is connected. All listeners
    share the same encoder output, each one receiving the frames produced after it
    connected.
    """

    API_PATH = "/audio"

    _config: RelayConfig
    _source_factory: SourceFactory
    _frame_stream: FrameStream | None
    """Carries frames from the active run to the relay, None when stopped."""
    _relay: FrameRelay | None
    _supervisor: EncodeSupervisor | None
    _app: web.Application | None
    """Web application instance for the server."""
    _app_runner: web.AppRunner | None
    """App runner for the web application."""
    _tcp_site: web.TCPSite | None
    """TCP site for the web application."""
    _zc: AsyncZeroconf | None
    """AsyncZeroconf instance, None unless advertising."""
    _mdns_service: AsyncServiceInfo | None
    """Registered mDNS service, if any."""

    def __init__(
        self, config: RelayConfig, *, source_factory: SourceFactory | None = None
    ) -> None:
        """
        Initialize a new relay server, nothing is started yet.

        Args:
            config: Server, input and encoder settings.
            source_factory: Creates the frame source of each encode run, defaults
                to a PyAV source built from config.
        """
        self._config = config
        self._source_factory = source_factory or self._create_source
        self._frame_stream = None
        self._relay = None
        self._supervisor = None
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        self._zc = None
        self._mdns_service = None
        self._port: int | None = None

    @property
    def config(self) -> RelayConfig:
        """Configuration of this server."""
        return self._config

    @property
    def relay(self) -> FrameRelay | None:
        """The frame relay, None when the server is not running."""
        return self._relay

    @property
    def supervisor(self) -> EncodeSupervisor | None:
        """The encode supervisor, None when the server is not running."""
        return self._supervisor

    @property
    def port(self) -> int | None:
        """Port the server is bound to, None when not running."""
        return self._port

    @property
    def url(self) -> str:
        """URL of the audio stream."""
        return f"http://{self._config.host}:{self._port or self._config.port}{self.API_PATH}"

    def _create_source(self) -> FrameSource:
        return AVFrameSource(
            self._config.input_format,
            self._config.input_url,
            encoder=self._config.encoder,
            bit_rate=self._config.bit_rate,
            verbose=self._config.verbose,
        )

    def _create_web_application(self) -> web.Application:
        """Create and configure the aiohttp web application."""
        app = web.Application(middlewares=[_log_request])
        app.router.add_get(self.API_PATH, self._handle_audio, allow_head=False)
        app.router.add_route("*", "/{tail:.*}", self._handle_not_found)
        return app

    async def start_server(self) -> None:
        """
        Start the encode pipeline and the HTTP server.

        Raises:
            OSError: If the server cannot bind to the configured host and port.
        """
        if self._app is not None:
            logger.warning("Server is already running")
            return

        host, port = self._config.host, self._config.port
        logger.info("Starting relay server on %s:%d", host, port)
        self._frame_stream = FrameStream()
        self._relay = FrameRelay(self._frame_stream)
        self._supervisor = EncodeSupervisor(
            source_factory=self._source_factory,
            frame_stream=self._frame_stream,
            pacing=self._config.pacing,
            restart_backoff_min=self._config.restart_backoff_min,
            restart_backoff_max=self._config.restart_backoff_max,
        )
        self._relay.start()
        self._supervisor.start()

        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app, handler_cancellation=True)
        await self._app_runner.setup()
        try:
            self._tcp_site = web.TCPSite(self._app_runner, host=host, port=port)
            await self._tcp_site.start()
        except OSError as err:
            logger.error("Failed to start server on %s:%d: %s", host, port, err)
            await self.close()
            raise

        self._port = self._app_runner.addresses[0][1]
        logger.info("Serving audio at %s", self.url)
        if self._config.advertise:
            await self._start_mdns_advertising(self._port)

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        await self._stop_mdns()

        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None
        self._port = None

    async def close(self) -> None:
        """Stop serving, stop the encoder and release all resources."""
        # Ending every session lets the streaming handlers return
        if self._relay is not None:
            await self._relay.close()

        await self.stop_server()

        if self._supervisor is not None:
            await self._supervisor.close(self._config.shutdown_timeout)
            self._supervisor = None
        self._relay = None
        if self._frame_stream is not None:
            self._frame_stream.close()
            self._frame_stream = None
        logger.info("Relay server closed")

    async def _handle_not_found(self, request: web.Request) -> web.Response:
        """Answer any request other than GET /audio."""
        return web.Response(status=404, text=NOT_FOUND_BODY, content_type="text/html")

    async def _handle_audio(self, request: web.Request) -> web.StreamResponse:
        """Stream encoded audio until the listener goes away or is evicted."""
        relay, supervisor = self._relay, self._supervisor
        if relay is None or supervisor is None:
            return web.Response(status=503, text="Relay is not running")

        session = ClientSession(capacity=self._config.queue_size, name=str(request.remote))
        try:
            await relay.register(session)
        except RuntimeError as err:
            logger.warning("Rejecting listener %s: %s", session.name, err)
            return web.Response(status=503, text="Relay is not running")
        supervisor.subscriber_joined()

        response = web.StreamResponse(
            headers={
                "Content-Type": self._config.content_type,
                "Cache-Control": CACHE_CONTROL,
            }
        )
        response.force_close()
        aborted = False
        evicted = asyncio.ensure_future(session.wait_evicted())
        try:
            await response.prepare(request)
            async for frame in session:
                if not await self._write_frame(response, frame.data, evicted):
                    break
        except (ConnectionError, TimeoutError) as err:
            logger.debug("Listener %s dropped: %r", session.name, err)
            aborted = True
        finally:
            evicted.cancel()
            supervisor.subscriber_left()
            session.disconnect()
            session.drain()
            relay.unregister(session)

        if session.evicted:
            # An evicted listener is usually not reading anymore
            logger.info("Listener %s was evicted", session.name)
            aborted = True
        if aborted:
            if request.transport is not None:
                request.transport.abort()
            return response
        try:
            async with asyncio.timeout(self._config.write_timeout):
                await response.write_eof()
        except (ConnectionError, TimeoutError) as err:
            logger.debug("Listener %s went away before end of stream: %r", session.name, err)
            if request.transport is not None:
                request.transport.abort()
        return response

    async def _write_frame(
        self, response: web.StreamResponse, data: bytes, evicted: asyncio.Future[None]
    ) -> bool:
        """
        Write one frame, bounded by the write timeout.

        Returns False when the session was evicted while the write was pending.

        Raises:
            TimeoutError: If the write did not complete within write_timeout.
            ConnectionError: If the listener connection failed.
        """
        write = asyncio.ensure_future(response.write(data))
        try:
            done, _ = await asyncio.wait(
                {write, evicted},
                timeout=self._config.write_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not write.done():
                write.cancel()
                with suppress(asyncio.CancelledError, ConnectionError):
                    await write
        if write in done:
            write.result()
            return True
        if evicted in done:
            return False
        raise TimeoutError(f"write did not complete within {self._config.write_timeout}s")

    async def _start_mdns_advertising(self, port: int) -> None:
        """Advertise the audio stream via mDNS."""
        addresses = get_advertise_addresses(self._config.host)
        if not addresses:
            logger.warning("No IP addresses available for mDNS advertising")
            return

        name = self._config.advertise_name or socket.gethostname()
        self._zc = AsyncZeroconf(ip_version=IPVersion.V4Only, interfaces=InterfaceChoice.Default)
        info = AsyncServiceInfo(
            type_=MDNS_SERVICE_TYPE,
            name=f"{name}.{MDNS_SERVICE_TYPE}",
            server=f"{name}.local.",
            parsed_addresses=addresses,
            port=port,
            properties={"path": self.API_PATH},
        )
        try:
            await self._zc.async_register_service(info)
            self._mdns_service = info
            logger.debug("mDNS advertising %s on port %d", name, port)
        except NonUniqueNameException:
            logger.error("A service named %s is already present in the local network", name)

    async def _stop_mdns(self) -> None:
        """Stop mDNS advertising if active."""
        if self._zc is None:
            return
        try:
            if self._mdns_service is not None:
                await self._zc.async_unregister_service(self._mdns_service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._mdns_service = None
