"""HTTP client for a LanguageTool-compatible checking service."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Callable

from pydantic import ValidationError

from marginalia.annotation import CheckRequest, check_url
from marginalia.exceptions import PositionMappingError, ServiceMalformed, ServiceUnreachable
from marginalia.json_types import FormFields, JSONValue
from marginalia.positions import byte_span, utf16_to_byte_offsets
from marginalia.schema import CheckResponseDTO

logger = logging.getLogger(__name__)

PROBE_TEXT = "This is a short sentence used to check that the service is up."


@dataclass(frozen=True)
class Match:
    message: str
    short_message: str
    offset: int
    length: int
    rule_id: str
    replacements: tuple[str, ...] = ()


class LanguageToolClient:
    def __init__(
        self,
        *,
        timeout: float = 30.0,
        urlopen_fn: Callable[..., object] = urllib.request.urlopen,
    ) -> None:
        self._timeout = timeout
        self._urlopen = urlopen_fn

    def _post(self, url: str, form: FormFields) -> bytes:
        body = urllib.parse.urlencode(form).encode("utf-8")
        req = urllib.request.Request(
            url,
            data=body,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with self._urlopen(req, timeout=self._timeout) as response:
                status = getattr(response, "status", 200)
                payload = response.read()
        except urllib.error.HTTPError as exc:
            raise ServiceUnreachable(f"{url} answered HTTP {exc.code}", exc) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ServiceUnreachable(f"cannot reach {url}: {exc}", exc) from exc
        if not 200 <= int(status) < 300:
            raise ServiceUnreachable(f"{url} answered HTTP {status}")
        return payload

    def execute_sync(self, request: CheckRequest) -> list[Match]:
        payload = self._post(request.url, request.to_form())
        return parse_matches(payload, request.text())

    async def execute(self, request: CheckRequest) -> list[Match]:
        return await asyncio.to_thread(self.execute_sync, request)

    def probe_sync(self, host: str, port: int, language: str) -> bool:
        try:
            self._post(check_url(host, port), {"language": language, "text": PROBE_TEXT})
        except ServiceUnreachable as exc:
            logger.debug("probe of %s:%s failed: %s", host, port, exc)
            return False
        return True

    async def probe(self, host: str, port: int, language: str) -> bool:
        return await asyncio.to_thread(self.probe_sync, host, port, language)


def parse_matches(payload: bytes, submitted_text: str) -> list[Match]:
    """Decode a check response into matches with UTF-8 byte offsets.

    The service counts offsets in UTF-16 code units of ``submitted_text``.
    """
    try:
        raw: JSONValue = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ServiceMalformed(f"response is not JSON: {exc}") from exc
    try:
        response = CheckResponseDTO.model_validate(raw)
    except ValidationError as exc:
        raise ServiceMalformed(f"unexpected response shape: {exc}") from exc
    table = utf16_to_byte_offsets(submitted_text)
    matches: list[Match] = []
    for item in response.matches:
        try:
            offset, length = byte_span(table, item.offset, item.length)
        except PositionMappingError as exc:
            raise ServiceMalformed(f"match for rule {item.rule.id}: {exc}") from exc
        matches.append(
            Match(
                message=item.message,
                short_message=item.shortMessage,
                offset=offset,
                length=length,
                rule_id=item.rule.id,
                replacements=tuple(replacement.value for replacement in item.replacements),
            )
        )
    return matches
