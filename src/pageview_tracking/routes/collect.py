"""
Beacon collection routes.

The tracking script posts JSON with ``navigator.sendBeacon``, which can't
read responses, so every well-formed request gets an empty 204 whether it was
recorded, deduplicated, blacklisted or dropped on a store error. Only a
malformed body is answered with 400.
"""
import json
import logging
from typing import Mapping

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import TypeAdapter, ValidationError

from ..core.models import Beacon, ClientInfo, DailyBeacon
from ..ingest import BeaconIngestor
from ..ip_ranges import parse_ip

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_IP = "127.0.0.1"

_beacon_adapter = TypeAdapter(Beacon)


def get_client_ip(headers: Mapping[str, str], peer: str | None = None) -> str | None:
    """Client IP from Client-IP, then X-Forwarded-For (first hop), then the peer.

    Returns None when the chosen value isn't a valid IPv4/IPv6 address.
    """
    candidates = [
        headers.get("client-ip", ""),
        headers.get("x-forwarded-for", "").split(",")[0],
        peer or "",
    ]
    ip = next((c.strip() for c in candidates if c and c.strip()), DEFAULT_CLIENT_IP)
    return ip if parse_ip(ip) is not None else None


def client_info(request: Request) -> ClientInfo:
    peer = request.client.host if request.client else None
    return ClientInfo(
        ip=get_client_ip(request.headers, peer),
        user_agent=request.headers.get("user-agent", ""),
        host=request.headers.get("host", ""),
    )


async def _read_json(request: Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON body")


def create_collect_router(ingestor: BeaconIngestor) -> APIRouter:
    """Create the router that receives tracking beacons.

    Args:
        ingestor: Applies accepted beacons to the store
    """
    router = APIRouter(tags=["tracking"])

    @router.post("/collect", status_code=204)
    async def collect(request: Request):
        """Dual-beacon endpoint: ``{"type": "pageview" | "metrics", ...}``."""
        data = await _read_json(request)
        try:
            beacon = _beacon_adapter.validate_python(data)
        except ValidationError as e:
            logger.debug(f"Rejected beacon: {e.error_count()} validation error(s)")
            raise HTTPException(status_code=400, detail="Invalid beacon")

        await ingestor.ingest(beacon, client_info(request))
        return Response(status_code=204)

    @router.post("/collect/daily", status_code=204)
    async def collect_daily(request: Request):
        """Daily-only endpoint: counts a pageview without storing the event."""
        data = await _read_json(request)
        try:
            beacon = DailyBeacon.model_validate(data)
        except ValidationError as e:
            logger.debug(f"Rejected daily beacon: {e.error_count()} validation error(s)")
            raise HTTPException(status_code=400, detail="Invalid beacon")

        await ingestor.record_daily_pageview(beacon, client_info(request))
        return Response(status_code=204)

    return router
