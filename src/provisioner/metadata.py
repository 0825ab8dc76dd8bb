"""Signing certificate extraction from Entra ID federation metadata.

The metadata endpoint is unauthenticated but unreliable in shape: it may
answer with an HTML sign-in or error page, a byte-order mark, or an
un-namespaced document. The extractor:

- fetches with httpx, falling back to an azure-core pipeline request
- parses, retrying once after stripping BOM and surrounding whitespace
- searches signing KeyDescriptors, then any KeyDescriptor, then any
  X509Certificate element, taking the first hit in document order
- normalizes the winner into single-line base64 and PEM form

Every failure raises MetadataExtractionError with a distinct kind; callers
treat all of them as soft.
"""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import httpx
from azure.core import PipelineClient
from azure.core.exceptions import AzureError
from azure.core.pipeline.transport import HttpTransport
from azure.core.rest import HttpRequest

from .config import DEFAULT_ISSUER_HOST, DEFAULT_METADATA_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

METADATA_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
XMLDSIG_NS = "http://www.w3.org/2000/09/xmldsig#"

USER_AGENT = "opencti-provisioner/1.0"
UTF8_BOM = b"\xef\xbb\xbf"
PEM_LINE_LENGTH = 64
PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_END = "-----END CERTIFICATE-----"
HTML_MARKERS = (b"<!doctype html", b"<html", b"<head", b"<body")


class MetadataFailureKind(str, Enum):
    TRANSPORT = "transport"
    AUTHZ_SUSPECTED = "authz-suspected"
    MALFORMED_DOCUMENT = "malformed-document"
    NO_CERTIFICATE_FOUND = "no-certificate-found"


REMEDIATION: dict[MetadataFailureKind, str] = {
    MetadataFailureKind.TRANSPORT: (
        "The metadata endpoint was unreachable. Retry later, or download the "
        "certificate (Base64) from Single sign-on > SAML Certificates."
    ),
    MetadataFailureKind.AUTHZ_SUSPECTED: (
        "The metadata endpoint returned an HTML page, usually a sign-in or consent "
        "redirect. Verify the application ID and download the certificate (Base64) "
        "from Single sign-on > SAML Certificates."
    ),
    MetadataFailureKind.MALFORMED_DOCUMENT: (
        "The metadata document could not be parsed. Download the Federation "
        "Metadata XML from Single sign-on > SAML Certificates and inspect it."
    ),
    MetadataFailureKind.NO_CERTIFICATE_FOUND: (
        "No signing certificate is published yet. Create and activate one under "
        "Single sign-on > SAML Certificates, then re-run the certificate command."
    ),
}


class MetadataExtractionError(Exception):
    """Certificate could not be extracted; ``kind`` classifies the failure."""

    def __init__(self, kind: MetadataFailureKind, detail: str) -> None:
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail

    @property
    def remediation(self) -> str:
        return REMEDIATION[self.kind]


class CandidateSource(int, Enum):
    """Structural location of a candidate; lower value wins."""

    SIGNING_KEY_DESCRIPTOR = 0
    KEY_DESCRIPTOR = 1
    BARE = 2


@dataclass(frozen=True)
class CertificateCandidate:
    text: str
    source: CandidateSource


@dataclass
class FederationMetadataDocument:
    raw: bytes
    root: ET.Element | None = None
    candidates: list[CertificateCandidate] = field(default_factory=list)


@dataclass(frozen=True)
class CertificatePayload:
    """A certificate in the two forms the deployment consumes."""

    base64_single: str
    pem_lines: tuple[str, ...]

    @classmethod
    def from_text(cls, text: str) -> CertificatePayload:
        single = normalize_certificate(text)
        wrapped = [
            single[i : i + PEM_LINE_LENGTH] for i in range(0, len(single), PEM_LINE_LENGTH)
        ]
        return cls(base64_single=single, pem_lines=(PEM_BEGIN, *wrapped, PEM_END))

    @property
    def pem(self) -> str:
        return "\n".join(self.pem_lines) + "\n"


@dataclass(frozen=True)
class _Fetched:
    status: int
    content_type: str
    body: bytes


def build_metadata_url(issuer_host: str, tenant_id: str, client_id: str) -> str:
    return (
        f"https://{issuer_host}/{tenant_id}"
        f"/federationmetadata/2007-06/federationmetadata.xml?appid={client_id}"
    )


def normalize_certificate(text: str) -> str:
    """Remove all whitespace from certificate text."""
    return "".join(text.split())


def _strip_noise(raw: bytes) -> bytes:
    body = raw.strip()
    if body.startswith(UTF8_BOM):
        body = body[len(UTF8_BOM) :].strip()
    return body


def looks_like_html(raw: bytes) -> bool:
    head = _strip_noise(raw)[:512].lower()
    return any(marker in head for marker in HTML_MARKERS)


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def parse_metadata(raw: bytes) -> FederationMetadataDocument:
    """Parse raw metadata bytes and collect certificate candidates.

    Raises:
        MetadataExtractionError: AUTHZ_SUSPECTED for HTML, MALFORMED_DOCUMENT
            for anything else that is not XML.
    """
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as first_error:
        logger.debug(f"Metadata parse failed, retrying after sanitize: {first_error}")
        try:
            root = ET.fromstring(_strip_noise(raw))
        except ET.ParseError as e:
            if looks_like_html(raw):
                raise MetadataExtractionError(
                    MetadataFailureKind.AUTHZ_SUSPECTED,
                    "Response is an HTML page, not federation metadata",
                ) from e
            raise MetadataExtractionError(
                MetadataFailureKind.MALFORMED_DOCUMENT, f"Invalid XML: {e}"
            ) from e

    if _local_name(root.tag).lower() == "html":
        raise MetadataExtractionError(
            MetadataFailureKind.AUTHZ_SUSPECTED,
            "Response is an HTML page, not federation metadata",
        )

    return FederationMetadataDocument(
        raw=raw, root=root, candidates=find_certificate_candidates(root)
    )


def _qualified_elements(root: ET.Element, tag: str, namespace: str) -> list[ET.Element]:
    return list(root.iter(f"{{{namespace}}}{tag}"))


def _local_elements(root: ET.Element, tag: str) -> list[ET.Element]:
    return [el for el in root.iter() if _local_name(el.tag) == tag]


def _collect(
    key_descriptors: list[ET.Element],
    certificates_in: Callable[[ET.Element], list[ET.Element]],
    all_certificates: list[ET.Element],
) -> list[CertificateCandidate]:
    candidates: list[CertificateCandidate] = []
    seen: set[int] = set()

    def add(element: ET.Element, source: CandidateSource) -> None:
        if id(element) in seen:
            return
        seen.add(id(element))
        if element.text and element.text.strip():
            candidates.append(CertificateCandidate(text=element.text, source=source))

    for descriptor in key_descriptors:
        if descriptor.get("use") == "signing":
            for cert in certificates_in(descriptor):
                add(cert, CandidateSource.SIGNING_KEY_DESCRIPTOR)
    for descriptor in key_descriptors:
        for cert in certificates_in(descriptor):
            add(cert, CandidateSource.KEY_DESCRIPTOR)
    for cert in all_certificates:
        add(cert, CandidateSource.BARE)
    return candidates


def find_certificate_candidates(root: ET.Element) -> list[CertificateCandidate]:
    """All non-empty X509Certificate texts, in priority then document order.

    Namespace-qualified lookup first; documents without the metadata or
    signature namespaces are searched by local element name.
    """
    candidates = _collect(
        _qualified_elements(root, "KeyDescriptor", METADATA_NS),
        lambda el: _qualified_elements(el, "X509Certificate", XMLDSIG_NS),
        _qualified_elements(root, "X509Certificate", XMLDSIG_NS),
    )
    if candidates:
        return candidates
    return _collect(
        _local_elements(root, "KeyDescriptor"),
        lambda el: _local_elements(el, "X509Certificate"),
        _local_elements(root, "X509Certificate"),
    )


def select_certificate(document: FederationMetadataDocument) -> CertificatePayload:
    """First candidate of the best available source.

    Raises:
        MetadataExtractionError: NO_CERTIFICATE_FOUND if there is none.
    """
    if not document.candidates:
        raise MetadataExtractionError(
            MetadataFailureKind.NO_CERTIFICATE_FOUND,
            "No X509Certificate element in federation metadata",
        )
    best = min(document.candidates, key=lambda c: c.source)
    logger.info(f"Selected certificate from {best.source.name.lower()} location")
    return CertificatePayload.from_text(best.text)


def extract_from_document(raw: bytes) -> CertificatePayload:
    return select_certificate(parse_metadata(raw))


class FederationMetadataExtractor:
    """Fetches federation metadata and extracts the SAML signing certificate."""

    def __init__(
        self,
        *,
        issuer_host: str = DEFAULT_ISSUER_HOST,
        timeout: float = DEFAULT_METADATA_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        fallback_transport: HttpTransport | None = None,
    ) -> None:
        self._issuer_host = issuer_host
        self._timeout = timeout
        self._transport = transport
        self._fallback_transport = fallback_transport

    def metadata_url(self, tenant_id: str, client_id: str) -> str:
        return build_metadata_url(self._issuer_host, tenant_id, client_id)

    async def extract_certificate(self, tenant_id: str, client_id: str) -> CertificatePayload:
        """Fetch the application's metadata and return its signing certificate.

        Raises:
            MetadataExtractionError: On any failure, classified by kind.
        """
        url = self.metadata_url(tenant_id, client_id)
        raw = await self.fetch(url)
        payload = extract_from_document(raw)
        logger.info(
            "Extracted SAML signing certificate",
            extra={"client_id": client_id, "certificate_length": len(payload.base64_single)},
        )
        return payload

    async def fetch(self, url: str) -> bytes:
        """Fetch metadata bytes, trying the fallback transport once.

        Raises:
            MetadataExtractionError: TRANSPORT if both attempts fail,
                AUTHZ_SUSPECTED if either attempt returned an HTML page.
        """
        failures: list[MetadataExtractionError] = []
        for name, fetcher in (("primary", self._fetch_primary), ("fallback", self._fetch_fallback)):
            try:
                return self._check_shape(await fetcher(url))
            except MetadataExtractionError as e:
                logger.warning(f"Metadata fetch ({name}) failed: {e}", extra={"url": url})
                failures.append(e)

        for failure in failures:
            if failure.kind == MetadataFailureKind.AUTHZ_SUSPECTED:
                raise failure
        raise MetadataExtractionError(
            MetadataFailureKind.TRANSPORT,
            "; ".join(f.detail for f in failures),
        )

    @staticmethod
    def _check_shape(fetched: _Fetched) -> bytes:
        if fetched.status != 200 or not _strip_noise(fetched.body).startswith(b"<"):
            kind = (
                MetadataFailureKind.AUTHZ_SUSPECTED
                if looks_like_html(fetched.body) or "html" in fetched.content_type.lower()
                else MetadataFailureKind.TRANSPORT
            )
            raise MetadataExtractionError(
                kind,
                f"Unexpected response: HTTP {fetched.status}, content-type "
                f"'{fetched.content_type or 'unknown'}'",
            )
        return fetched.body

    async def _fetch_primary(self, url: str) -> _Fetched:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT, "Accept": "application/xml"},
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise MetadataExtractionError(MetadataFailureKind.TRANSPORT, f"httpx: {e}") from e
        return _Fetched(
            status=response.status_code,
            content_type=response.headers.get("content-type", ""),
            body=response.content,
        )

    async def _fetch_fallback(self, url: str) -> _Fetched:
        client_kwargs = {}
        if self._fallback_transport is not None:
            client_kwargs["transport"] = self._fallback_transport

        def send() -> _Fetched:
            with PipelineClient(base_url=url, **client_kwargs) as client:
                request = HttpRequest(
                    "GET", url, headers={"User-Agent": USER_AGENT, "Accept": "application/xml"}
                )
                # Streamed so the pipeline hands back raw bytes without decoding XML
                response = client.send_request(
                    request,
                    stream=True,
                    connection_timeout=self._timeout,
                    read_timeout=self._timeout,
                )
                try:
                    body = response.read()
                finally:
                    response.close()
                return _Fetched(
                    status=response.status_code,
                    content_type=response.headers.get("content-type", ""),
                    body=body,
                )

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, send), timeout=self._timeout * 2
            )
        except asyncio.TimeoutError as e:
            raise MetadataExtractionError(
                MetadataFailureKind.TRANSPORT, "pipeline: timed out"
            ) from e
        except AzureError as e:
            raise MetadataExtractionError(MetadataFailureKind.TRANSPORT, f"pipeline: {e}") from e
