"""Litestar application factory for the QueueDeck admin API."""
import logging
from typing import Optional

from litestar import Litestar, Request, Response
from litestar.datastructures import State
from litestar.di import Provide
from litestar.exceptions import ValidationException

from queuedeck.common.exceptions import InvalidArgument, QueueDeckException
from queuedeck.client import QueueClient
from queuedeck.config import Settings
from queuedeck.dashboard.auth import StaticTokenVerifier, TokenVerifier
from queuedeck.dashboard.controllers.core import CoreController
from queuedeck.dashboard.controllers.queues import QueuesController

logger = logging.getLogger(__name__)


def get_client(state: State) -> QueueClient:
    return state.client


def queuedeck_exception_handler(request: Request, exc: QueueDeckException) -> Response:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
    return Response(content=exc.to_dict(), status_code=exc.status_code)


def validation_exception_handler(request: Request, exc: ValidationException) -> Response:
    error = InvalidArgument(exc.detail)
    return Response(content=error.to_dict(), status_code=error.status_code)


def create_app(
    client: QueueClient,
    settings: Optional[Settings] = None,
    verifier: Optional[TokenVerifier] = None,
    debug: bool = False,
) -> Litestar:
    """Create the Litestar application for the admin API.

    Args:
        client: The QueueClient every route operates on.
        settings: Runtime settings; defaults to the client's.
        verifier: Token verifier for the admin routes; defaults to the
            configured static tokens.
        debug: Litestar debug mode.

    Returns:
        A Litestar application.
    """
    settings = settings or client.settings
    verifier = verifier or StaticTokenVerifier(settings.api_tokens)

    return Litestar(
        route_handlers=[CoreController, QueuesController],
        state=State({"client": client, "settings": settings, "verifier": verifier}),
        dependencies={"client": Provide(get_client, sync_to_thread=False)},
        exception_handlers={
            QueueDeckException: queuedeck_exception_handler,
            ValidationException: validation_exception_handler,
        },
        on_startup=[client.bus.start],
        on_shutdown=[client.bus.close],
        debug=debug,
    )
