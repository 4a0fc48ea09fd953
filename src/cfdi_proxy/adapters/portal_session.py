"""
Portal session — FIEL login against the SAT CFDI portal (scraping path).

Adapter layer — implements the PortalConnector and PortalSession ports
with httpx (cookie jar per session) and lxml.

Login flow:
  1. GET the FIEL login page; its form carries a one-time `guid`.
  2. Sign "guid|RFC|certificate number" with the FIEL (RSA-SHA1) and POST
     the form back with:
        token = b64( b64(payload) + "#" + b64(signature) )
        fert  = certificate valid-until as yymmddHHMMSS + "Z"
  3. GET the portal root; SAT answers with a federation form that must be
     auto-submitted to land on the authenticated portal.
  4. The session is alive when the portal page reads
     "RFC Autenticado: <RFC>".

Each step runs under the transport retry policy (connection errors and
5xx only). A session that does not come out alive is AUTHENTICATION_FAILED.
"""

from __future__ import annotations

import base64
import uuid
from collections.abc import Callable
from urllib.parse import urljoin

import httpx
import structlog
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from cfdi_proxy.adapters.portal_forms import first_form
from cfdi_proxy.adapters.transport import (
    UpstreamServerError,
    as_upstream_unavailable,
    call_with_retry,
    create_client,
    raise_for_server_error,
)
from cfdi_proxy.config import PortalSettings
from cfdi_proxy.domain.models import FielIdentity
from cfdi_proxy.railway import ErrorCode, Result

log = structlog.get_logger()

type ClientFactory = Callable[[PortalSettings], httpx.Client]


class PortalLoginError(Exception):
    """SAT did not accept the FIEL login."""


def _default_client(settings: PortalSettings) -> httpx.Client:
    return create_client(
        timeout_seconds=settings.timeout_seconds,
        connect_timeout_seconds=settings.connect_timeout_seconds,
        legacy_tls=settings.legacy_tls,
    )


def login_token(identity: FielIdentity, guid: str) -> str:
    payload = f"{guid}|{identity.rfc}|{identity.certificate_number}".encode()
    signature = identity.private_key.sign(payload, padding.PKCS1v15(), hashes.SHA1())
    inner = base64.b64encode(payload) + b"#" + base64.b64encode(signature)
    return base64.b64encode(inner).decode("ascii")


def login_fert(identity: FielIdentity) -> str:
    return identity.valid_until.strftime("%y%m%d%H%M%S") + "Z"


class HttpPortalSession:
    """
    Authenticated portal session bound to one httpx client.

    Implements the PortalSession port. The client is thread-safe, so the
    concurrent downloader shares one session across its workers.
    """

    def __init__(self, client: httpx.Client, rfc: str, base_url: str) -> None:
        self._client = client
        self._rfc = rfc
        self._base_url = base_url

    @property
    def rfc(self) -> str:
        return self._rfc

    @property
    def base_url(self) -> str:
        return self._base_url

    def get_page(self, url: str) -> str:
        response = raise_for_server_error(self._client.get(url))
        response.raise_for_status()
        return response.text

    def post_form(self, url: str, fields: dict[str, str], async_postback: bool = False) -> str:
        headers = {"Referer": url}
        if async_postback:
            headers["X-MicrosoftAjax"] = "Delta=true"
            headers["X-Requested-With"] = "XMLHttpRequest"
        response = raise_for_server_error(self._client.post(url, data=fields, headers=headers))
        response.raise_for_status()
        return response.text

    def fetch(self, url: str) -> bytes:
        """Download one artifact; empty bodies count as failures."""
        response = self._client.get(url)
        response.raise_for_status()
        if not response.content:
            raise ValueError("SAT returned an empty document")
        return response.content

    def is_alive(self) -> bool:
        """Re-read the portal root and look for the authenticated RFC banner."""
        try:
            page = self.get_page(self._base_url)
        except (httpx.HTTPError, UpstreamServerError, ValueError) as e:
            log.warning("portal.alive_check_failed", rfc=self._rfc, error=str(e))
            return False
        return f"RFC Autenticado: {self._rfc}".upper() in page.upper()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpPortalSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FielPortalConnector:
    """
    Open portal sessions with a verified FIEL.

    Implements the PortalConnector port.
    """

    def __init__(
        self,
        settings: PortalSettings,
        client_factory: ClientFactory = _default_client,
        guid_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory
        self._guid_factory = guid_factory

    def establish(self, identity: FielIdentity) -> Result[HttpPortalSession]:
        """
        Log in with the FIEL.

        Returns Success(session) or Failure(AUTHENTICATION_FAILED) when SAT
        refuses the login, Failure(UPSTREAM_UNAVAILABLE) when SAT kept
        failing at the transport level after the retries.
        """
        client = self._client_factory(self._settings)
        session = HttpPortalSession(client, identity.rfc, self._settings.base_url)
        result = (
            Result.from_computation(
                lambda: self._do_login(session, client, identity),
                ErrorCode.AUTHENTICATION_FAILED,
                "Authentication error",
            )
            .map_failure(as_upstream_unavailable)
            .peek(lambda _: log.info("portal.login_succeeded", rfc=identity.rfc))
            .peek_failure(
                lambda failure: log.warning(
                    "portal.login_failed", rfc=identity.rfc, code=failure.code.value,
                    reason=failure.message,
                )
            )
        )
        if result.is_failure():
            session.close()
        return result

    def _retry(self, operation: Callable[[], httpx.Response]) -> httpx.Response:
        return call_with_retry(
            lambda: raise_for_server_error(operation()),
            attempts=self._settings.retry_attempts,
            backoff_seconds=self._settings.retry_backoff_seconds,
        )

    def _do_login(
        self, session: HttpPortalSession, client: httpx.Client, identity: FielIdentity
    ) -> HttpPortalSession:
        login_url = self._settings.login_url
        login_page = self._retry(lambda: client.get(login_url))
        login_page.raise_for_status()

        form = first_form(login_page.text)
        fields = dict(form.fields) if form else {}
        guid = fields.get("guid") or self._guid_factory()
        fields.update(
            {
                "credentialsRequired": "CERT",
                "guid": guid,
                "ks": "null",
                "urlApplet": login_url,
                "token": login_token(identity, guid),
                "fert": login_fert(identity),
            }
        )
        action = urljoin(str(login_page.url), form.action) if form and form.action else login_url
        answer = self._retry(lambda: client.post(action, data=fields))
        answer.raise_for_status()

        portal = self._retry(lambda: client.get(self._settings.base_url))
        portal.raise_for_status()
        federation = first_form(portal.text)
        if federation is not None and federation.method == "post" and federation.fields:
            target = urljoin(str(portal.url), federation.action or "")
            submitted = self._retry(lambda: client.post(target, data=federation.fields))
            submitted.raise_for_status()

        if not session.is_alive():
            raise PortalLoginError("SAT did not accept the FIEL login")
        return session
