"""
External Telemetry Fetcher
==========================

Pulls the latest reading from the upstream telemetry API.

WHAT THIS DOES:
--------------
1. Calls the upstream endpoint (at most 10 seconds, then we give up)
2. Unwraps the envelope the endpoint sends back
3. Decodes the hex payload into physical units
4. Turns the result into a SensorReading

THE DATA FLOW:
-------------
    Upstream API (kedairekagreenhouse / Antares)
            |
            | GET with API key header
            v
    {"device_code": "HZ1", "reading": {"encoded_data": "02BC07D000F0", ...}}
            |
            | hex_decoder.decode()
            v
    SensorReading(temperature=24.0, ph=7.0, tds_level=200.0)

TWO ENVELOPES:
-------------
    Hex envelope:    {"device_code": ..., "reading": {"encoded_data": ..., "timestamp": ...}}
    Antares oneM2M:  {"m2m:cin": {"con": <JSON string or object>, "ct": "20260105T222650"}}

FAILURES:
--------
Nothing ever escapes fetch_latest_reading(). Every failure is logged and
turned into None; last_failure says what kind of failure it was so the
storage manager can tell a dead network from a bad payload.
"""

import asyncio
import json
import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import httpx

from hydromonitor.models import DecodedReading, SensorReading
from hydromonitor.services import hex_decoder
from hydromonitor.utils.validation import parse_timestamp

logger = logging.getLogger(__name__)


class FetchFailure(str, Enum):
    """
    Why the last fetch returned nothing.

    - DISABLED: no URL or API key configured
    - NETWORK: timeout, connection problem or non-2xx status
    - PAYLOAD: the response arrived but we couldn't use it
    - UNEXPECTED: anything else (a bug, most likely)
    """
    DISABLED = "disabled"
    NETWORK = "network"
    PAYLOAD = "payload"
    UNEXPECTED = "unexpected"


class PayloadError(ValueError):
    """The upstream response can't be turned into a reading."""


class TelemetryFetcher:
    """
    Fetches and decodes the latest reading from the upstream API.

    HOW TO USE:
    ----------
    fetcher = TelemetryFetcher(
        api_url="https://kedairekagreenhouse.my.id/api/latest-readings/HZ1",
        api_key="your-key-here",
    )

    reading = await fetcher.fetch_latest_reading()
    if reading is None:
        print("No usable reading:", fetcher.last_failure)
    """

    REQUEST_TIMEOUT = 10.0
    UNKNOWN_DEVICE = "UNKNOWN"
    USER_AGENT = "HydroMonitor/1.0"
    ANTARES_BASE_URL = "https://platform.antares.id:8443"

    def __init__(
        self,
        api_url: Optional[str],
        api_key: Optional[str],
        key_header: str = "X-API-KEY",
        request_timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Set up the fetcher.

        Args:
            api_url: Full URL of the "latest reading" endpoint
            api_key: Static key sent in key_header
            key_header: Header that carries the key
            request_timeout: Upper bound for the whole request (seconds)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.api_url = api_url
        self.api_key = api_key
        self.key_header = key_header
        self.request_timeout = request_timeout
        self.last_failure: Optional[FetchFailure] = None
        self.http_client = httpx.AsyncClient(timeout=request_timeout, transport=transport)

        if not self.enabled:
            logger.warning(
                "Telemetry fetcher disabled: upstream URL or API key not configured. "
                "Readings will only come from manual entries."
            )

    @classmethod
    def for_antares(
        cls,
        api_key: Optional[str],
        application_id: Optional[str],
        device_id: Optional[str],
        base_url: Optional[str] = None,
        **kwargs,
    ) -> "TelemetryFetcher":
        """
        Build a fetcher for the Antares oneM2M platform.

        The "latest content instance" lives at
        <base>/~/antares-cse/antares-id/<application>/<device>/la
        """
        api_url = None
        if application_id and device_id:
            root = (base_url or cls.ANTARES_BASE_URL).rstrip("/")
            api_url = f"{root}/~/antares-cse/antares-id/{application_id}/{device_id}/la"
        return cls(api_url, api_key, key_header="X-M2M-Origin", **kwargs)

    @property
    def enabled(self) -> bool:
        """True when both the URL and the API key are configured."""
        return bool(self.api_url and self.api_key)

    @property
    def mode(self) -> str:
        """Short description for the health endpoint."""
        if not self.enabled:
            return "disabled"
        return "antares" if self.key_header == "X-M2M-Origin" else "external"

    # =========================================================================
    # FETCHING
    # =========================================================================

    async def fetch_envelope(self) -> dict:
        """
        Call the upstream endpoint and return the JSON body.

        Raises:
            httpx.HTTPError / asyncio.TimeoutError: network problems
            PayloadError: wrong content type or unparseable body
        """
        headers = {
            self.key_header: self.api_key,
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }

        logger.debug(f"Fetching telemetry from: {self.api_url}")

        # httpx's timeout covers each phase; wait_for bounds the whole call
        response = await asyncio.wait_for(
            self.http_client.get(self.api_url, headers=headers),
            timeout=self.request_timeout,
        )
        response.raise_for_status()

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type.lower():
            raise PayloadError(f"Expected JSON response but got {content_type or 'no content type'}")

        try:
            data = response.json()
        except ValueError as e:
            raise PayloadError(f"Response body is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PayloadError(f"Expected a JSON object but got {type(data).__name__}")
        return data

    async def fetch_latest_reading(self) -> Optional[SensorReading]:
        """
        THE MAIN FUNCTION - fetch, decode and normalize one reading.

        Returns:
            The reading, or None if anything went wrong (see last_failure)
        """
        if not self.enabled:
            self.last_failure = FetchFailure.DISABLED
            return None

        fetched_at = datetime.now(timezone.utc)

        try:
            data = await self.fetch_envelope()
            reading = self.parse_envelope(data, fetched_at)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            logger.warning(
                f"Telemetry request to {self.api_url} timed out after {self.request_timeout}s"
            )
            self.last_failure = FetchFailure.NETWORK
            return None
        except httpx.HTTPStatusError as e:
            error_body = e.response.text[:500]
            logger.warning(f"Telemetry API error: HTTP {e.response.status_code} - {error_body}")
            self.last_failure = FetchFailure.NETWORK
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Cannot reach telemetry API at {self.api_url}: {e}")
            self.last_failure = FetchFailure.NETWORK
            return None
        except PayloadError as e:
            logger.warning(f"Unusable telemetry payload: {e}")
            self.last_failure = FetchFailure.PAYLOAD
            return None
        except Exception as e:
            logger.error(f"Unexpected error fetching telemetry: {e}", exc_info=True)
            self.last_failure = FetchFailure.UNEXPECTED
            return None

        self.last_failure = None
        logger.info(
            f"Fetched reading {reading.id}: temperature={reading.temperature} "
            f"ph={reading.ph} tds={reading.tds_level}"
        )
        return reading

    # =========================================================================
    # PARSING
    # =========================================================================

    def parse_envelope(self, data: dict, fetched_at: datetime) -> SensorReading:
        """
        Take the raw JSON from the API and turn it into a SensorReading.

        Raises:
            PayloadError: if no usable reading can be extracted
        """
        if "m2m:cin" in data:
            return self._parse_antares(data, fetched_at)

        device_code = data.get("device_code") or self.UNKNOWN_DEVICE
        reading_block = data.get("reading")
        encoded_data = reading_block.get("encoded_data") if isinstance(reading_block, dict) else None

        if not encoded_data:
            raise PayloadError(f"No encoded_data found in response: {str(data)[:200]}")

        decoded = hex_decoder.decode(encoded_data, device_code)
        if decoded is None:
            raise PayloadError(f"Failed to decode hex data for device: {device_code}")

        timestamp_candidates = [
            reading_block.get("timestamp"),
            data.get("timestamp"),
            data.get("created_at"),
            data.get("time"),
        ]
        return self._build_reading(decoded, data, timestamp_candidates, fetched_at)

    def _parse_antares(self, data: dict, fetched_at: datetime) -> SensorReading:
        """Unwrap a oneM2M content instance."""
        instance = data.get("m2m:cin")
        content = instance.get("con") if isinstance(instance, dict) else None
        if not content:
            raise PayloadError("Invalid response format from Antares API")

        if isinstance(content, str):
            try:
                content = json.loads(content)
            except ValueError as e:
                raise PayloadError(f"Antares content is not JSON: {e}") from e

        if not isinstance(content, dict):
            raise PayloadError(f"Unsupported Antares content: {type(content).__name__}")

        # Devices that forward the hex envelope through Antares
        if "reading" in content or "encoded_data" in content:
            if "encoded_data" in content:
                content = {
                    "device_code": content.get("device_code"),
                    "reading": {"encoded_data": content["encoded_data"]},
                }
            content.setdefault("timestamp", instance.get("ct"))
            return self.parse_envelope(content, fetched_at)

        decoded = DecodedReading(
            temperature=_as_float(content.get("temperature")),
            ph=_as_float(content.get("ph")),
            tds_level=_as_float(content.get("tdsLevel", content.get("tds_level"))),
        )

        timestamp_candidates = [content.get("timestamp"), instance.get("ct")]
        return self._build_reading(decoded, instance, timestamp_candidates, fetched_at)

    def _build_reading(
        self,
        decoded: DecodedReading,
        envelope: dict,
        timestamp_candidates: list,
        fetched_at: datetime,
    ) -> SensorReading:
        """Normalize decoded fields into the canonical reading shape."""
        if decoded.tds_level is not None:
            tds_level = decoded.tds_level
        elif decoded.ec is not None:
            tds_level = decoded.ec
        else:
            tds_level = 0.0

        timestamp = fetched_at
        for candidate in timestamp_candidates:
            parsed = parse_timestamp(candidate)
            if parsed is not None:
                timestamp = parsed
                break

        reading_id = (
            envelope.get("id")
            or envelope.get("_id")
            or envelope.get("reading_id")
            or envelope.get("ri")
            or f"ext_{int(fetched_at.timestamp() * 1000)}"
        )

        return SensorReading(
            id=str(reading_id),
            timestamp=timestamp,
            temperature=decoded.temperature or 0.0,
            ph=decoded.ph or 0.0,
            tds_level=tds_level,
            created_at=fetched_at,
        )

    async def close(self):
        """
        Clean up when we're done.

        Called when the server shuts down.
        """
        await self.http_client.aclose()


def _as_float(value) -> Optional[float]:
    """
    Convert an upstream value to float.

    Missing or non-numeric values ("n/a", NaN) come back as None and end
    up as 0 in the reading, like every other missing field.
    """
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-numeric telemetry value: {value!r}")
        return None
    return None if math.isnan(number) else number
