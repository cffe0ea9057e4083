"""
Lambda handler for POST /api/view (NFT-gated document access).

Flow:
1. Parse the JSON body for address, optional message/signature and tokenId.
2. Recover the personal-sign signer and require it to match the claimed address.
3. Consume the signed nonce when nonce binding is enabled.
4. Read balanceOf for the address from the NFT contract (single eth_call).
5. Resolve the document on the IPFS gateway and return the PDF bytes or its URL.

GET serves a health probe, or issues a single-use nonce with ?nonce=1.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping

import boto3
import requests
from botocore.exceptions import ClientError
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import function_signature_to_4byte_selector

DEFAULT_GATEWAY_URL = "https://gateway.pinata.cloud/ipfs"
DEFAULT_RPC_TIMEOUT_SECONDS = 8.0
DEFAULT_GATEWAY_TIMEOUT_SECONDS = 8.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 4.0
DEFAULT_NONCE_TTL_SECONDS = 300
DEFAULT_DOCUMENT_FILENAME = "docs.pdf"

REQUIRED_ENV_VARS = ("RPC_URL", "NFT_CONTRACT_ADDRESS", "DOCS_CID")
RESPONSE_MODES = ("proxy", "redirect")
OWNERSHIP_READERS = ("rpc", "web3")
SUPPORTED_METHODS = ("GET", "POST")
TRUE_VALUES = {"1", "true", "yes", "on"}

# Probed in order after the override and token-specific paths; "" is the CID itself.
CANDIDATE_DOCUMENT_PATHS = ("", "docs.pdf", "document.pdf", "index.pdf", "file.pdf")

ERC721_BALANCE_OF = "balanceOf(address)"
ERC1155_BALANCE_OF = "balanceOf(address,uint256)"
UINT256_MAX = 2**256 - 1

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
SIGNATURE_PATTERN = re.compile(r"^0x[a-fA-F0-9]{130}$")
NONCE_IN_MESSAGE_PATTERN = re.compile(r"(?<![0-9a-zA-Z])0x[a-fA-F0-9]{64}(?![0-9a-fA-F])")
HEX_RESULT_PATTERN = re.compile(r"^0x[a-fA-F0-9]+$")
TOKEN_ID_PATTERN = re.compile(r"^\d+$")

PDF_RESPONSE_HEADERS = {
    "Content-Type": "application/pdf",
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "frame-ancestors 'self';",
    "X-Content-Type-Options": "nosniff",
}


def _log_level() -> int:
    level = logging.getLevelName(str(os.environ.get("LOG_LEVEL", "INFO")).strip().upper())
    return level if isinstance(level, int) else logging.INFO


logger = logging.getLogger(__name__)
logger.setLevel(_log_level())


class BadRequestError(ValueError):
    """Raised when request validation fails."""


class MethodNotAllowedError(ValueError):
    """Raised when an unsupported HTTP method is provided."""


class AuthenticationError(ValueError):
    """Raised when the signature or nonce does not prove control of the address."""


class AccessDeniedError(ValueError):
    """Raised when the address holds no token."""


class UpstreamError(Exception):
    """Raised when the RPC node or the document gateway fails."""


class UpstreamTimeoutError(UpstreamError):
    """Raised when the RPC node or the document gateway does not answer in time."""


@dataclass(frozen=True)
class ConfigurationError(Exception):
    message: str
    missing: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class DocumentNotFoundError(Exception):
    message: str
    tried: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class GateConfig:
    rpc_url: str
    contract_address: str
    docs_cid: str
    gateway_url: str = DEFAULT_GATEWAY_URL
    docs_file: str = ""
    path_discovery: bool = False
    path_override: str = ""
    token_id: int | None = None
    response_mode: str = "proxy"
    ownership_reader: str = "rpc"
    allow_unverified: bool = False
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT_SECONDS
    gateway_timeout: float = DEFAULT_GATEWAY_TIMEOUT_SECONDS
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    nonce_table_name: str = ""
    nonce_ttl_seconds: int = DEFAULT_NONCE_TTL_SECONDS

    @property
    def nonce_binding(self) -> bool:
        return bool(self.nonce_table_name)


@dataclass(frozen=True)
class AccessRequest:
    address_claimed: str | None
    message: str | None
    signature: str | None
    token_id: int | None


@dataclass(frozen=True)
class UnverifiedCredential:
    address: str


@dataclass(frozen=True)
class VerifiedCredential:
    address: str
    message: str
    signature: str


Credential = UnverifiedCredential | VerifiedCredential


@dataclass(frozen=True)
class ViewCall:
    """A view function taking static arguments and returning a single uint256."""

    contract_address: str
    function_signature: str
    args: tuple[Any, ...] = ()

    @property
    def function_name(self) -> str:
        return self.function_signature.split("(", 1)[0]

    @property
    def argument_types(self) -> list[str]:
        inner = self.function_signature[self.function_signature.index("(") + 1 : -1]
        return [abi_type.strip() for abi_type in inner.split(",") if abi_type.strip()]


@dataclass(frozen=True)
class OwnershipQuery:
    contract_address: str
    owner_address: str
    token_id: int | None = None

    def view_call(self) -> ViewCall:
        if self.token_id is None:
            return ViewCall(self.contract_address, ERC721_BALANCE_OF, (self.owner_address,))
        return ViewCall(self.contract_address, ERC1155_BALANCE_OF, (self.owner_address, self.token_id))


@dataclass(frozen=True)
class OwnershipResult:
    balance: int

    @property
    def granted(self) -> bool:
        return self.balance > 0


@dataclass(frozen=True)
class DocumentLocation:
    base_url: str
    cid: str
    path: str = ""

    @property
    def url(self) -> str:
        base = f"{self.base_url.rstrip('/')}/{self.cid}"
        return f"{base}/{self.path}" if self.path else base

    @property
    def label(self) -> str:
        return f"{self.cid}/{self.path}" if self.path else self.cid

    @property
    def filename(self) -> str:
        name = self.path.rsplit("/", 1)[-1]
        return name if name.lower().endswith(".pdf") else DEFAULT_DOCUMENT_FILENAME


def _env(environ: Mapping[str, str], name: str) -> str:
    return str(environ.get(name) or "").strip()


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return _env(environ, name).lower() in TRUE_VALUES


def _env_seconds(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _env(environ, name)
    if not raw:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number of seconds") from exc
    if not parsed > 0:
        raise ConfigurationError(f"{name} must be positive")
    return parsed


def _env_choice(environ: Mapping[str, str], name: str, choices: tuple[str, ...]) -> str:
    value = _env(environ, name).lower() or choices[0]
    if value not in choices:
        raise ConfigurationError(f"{name} must be one of: {', '.join(choices)}")
    return value


def _normalize_cid(value: str) -> str:
    cid = value.strip()
    if cid.lower().startswith("ipfs://"):
        cid = cid[len("ipfs://") :]
    return cid.strip("/")


def _parse_token_id(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("token id must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and TOKEN_ID_PATTERN.fullmatch(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValueError("token id must be a non-negative integer")
    if not 0 <= parsed <= UINT256_MAX:
        raise ValueError("token id must fit in uint256")
    return parsed


def load_config(environ: Mapping[str, str]) -> GateConfig:
    missing = tuple(name for name in REQUIRED_ENV_VARS if not _env(environ, name))
    if missing:
        raise ConfigurationError(f"Missing env vars: {', '.join(missing)}", missing=missing)

    contract_address = _env(environ, "NFT_CONTRACT_ADDRESS")
    if not ADDRESS_PATTERN.fullmatch(contract_address):
        raise ConfigurationError("NFT_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")

    docs_cid = _normalize_cid(_env(environ, "DOCS_CID"))
    if not docs_cid:
        raise ConfigurationError("DOCS_CID must not be empty", missing=("DOCS_CID",))

    token_id = None
    raw_token_id = _env(environ, "TOKEN_ID")
    if raw_token_id:
        try:
            token_id = _parse_token_id(raw_token_id)
        except ValueError as exc:
            raise ConfigurationError(f"TOKEN_ID is invalid: {exc}") from exc

    nonce_ttl_seconds = int(_env_seconds(environ, "NONCE_TTL_SECONDS", DEFAULT_NONCE_TTL_SECONDS))

    return GateConfig(
        rpc_url=_env(environ, "RPC_URL"),
        contract_address=contract_address.lower(),
        docs_cid=docs_cid,
        gateway_url=(_env(environ, "GATEWAY_URL") or DEFAULT_GATEWAY_URL).rstrip("/"),
        docs_file=_env(environ, "DOCS_FILE").strip("/"),
        path_discovery=_env_flag(environ, "DOCS_PATH_DISCOVERY"),
        path_override=_env(environ, "DOCS_PATH_OVERRIDE").strip("/"),
        token_id=token_id,
        response_mode=_env_choice(environ, "RESPONSE_MODE", RESPONSE_MODES),
        ownership_reader=_env_choice(environ, "OWNERSHIP_READER", OWNERSHIP_READERS),
        allow_unverified=_env_flag(environ, "ALLOW_UNVERIFIED_ADDRESS"),
        rpc_timeout=_env_seconds(environ, "RPC_TIMEOUT_SECONDS", DEFAULT_RPC_TIMEOUT_SECONDS),
        gateway_timeout=_env_seconds(environ, "GATEWAY_TIMEOUT_SECONDS", DEFAULT_GATEWAY_TIMEOUT_SECONDS),
        probe_timeout=_env_seconds(environ, "PROBE_TIMEOUT_SECONDS", DEFAULT_PROBE_TIMEOUT_SECONDS),
        nonce_table_name=_env(environ, "ACCESS_NONCE_TABLE_NAME"),
        nonce_ttl_seconds=max(nonce_ttl_seconds, 1),
    )


@lru_cache(maxsize=1)
def runtime_config() -> GateConfig:
    """Configuration for this Lambda container, read from the environment once."""
    return load_config(os.environ)


def _response(status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
    merged_headers = {
        "Content-Type": "application/json",
        "Access-Control-Allow-Origin": "*",
    }
    if headers:
        merged_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": merged_headers,
        "body": json.dumps(body, default=str),
    }


def _error_response(
    status_code: int,
    error: str,
    message: str,
    headers: dict[str, str] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error, "message": message}
    body.update({key: value for key, value in extra.items() if value is not None})
    return _response(status_code, body, headers=headers)


def _pdf_response(content: bytes, filename: str) -> dict[str, Any]:
    return {
        "statusCode": 200,
        "headers": {
            **PDF_RESPONSE_HEADERS,
            "Content-Disposition": f'inline; filename="{filename}"',
        },
        "isBase64Encoded": True,
        "body": base64.b64encode(content).decode("ascii"),
    }


def _request_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        request_context = event.get("requestContext")
        if isinstance(request_context, dict) and isinstance(request_context.get("http"), dict):
            method = request_context["http"].get("method")
    return str(method or "").strip().upper()


def _query_params(event: dict[str, Any]) -> dict[str, Any]:
    query_params = event.get("queryStringParameters") or {}
    if not isinstance(query_params, dict):
        raise BadRequestError("queryStringParameters must be an object")
    return {key: value for key, value in query_params.items() if value is not None}


def _decode_event_body(event: dict[str, Any]) -> dict[str, Any]:
    raw_body = event.get("body")
    if raw_body in (None, ""):
        return {}

    if event.get("isBase64Encoded"):
        try:
            raw_body = base64.b64decode(raw_body).decode("utf-8")
        except Exception as exc:
            raise BadRequestError("body must be valid base64-encoded JSON") from exc

    try:
        decoded = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise BadRequestError("body must be valid JSON") from exc

    if not isinstance(decoded, dict):
        raise BadRequestError("JSON body must be an object")
    return decoded


def _optional_string_field(params: dict[str, Any], *field_names: str) -> str | None:
    for field_name in field_names:
        value = params.get(field_name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise BadRequestError(f"{field_name} must be a string")
        if value.strip():
            return value
    return None


def _normalize_address(value: str, field_name: str) -> str:
    candidate = value.strip()
    if not ADDRESS_PATTERN.fullmatch(candidate):
        raise BadRequestError(f"{field_name} must be a 0x-prefixed 20-byte hex address")
    return f"0x{candidate[2:].lower()}"


def parse_input(event: dict[str, Any]) -> AccessRequest:
    method = _request_method(event)
    if method != "POST":
        raise MethodNotAllowedError("Only POST is supported for document access")

    params = _decode_event_body(event)

    raw_address = _optional_string_field(params, "address", "walletAddress")
    address = _normalize_address(raw_address, "address") if raw_address is not None else None

    message = _optional_string_field(params, "message")
    signature = _optional_string_field(params, "signature")
    if (message is None) != (signature is None):
        raise BadRequestError("message and signature must be provided together")
    if address is None and signature is None:
        raise BadRequestError("address is required")

    token_id = None
    raw_token_id = params.get("tokenId", params.get("token_id"))
    if raw_token_id not in (None, ""):
        try:
            token_id = _parse_token_id(raw_token_id)
        except ValueError as exc:
            raise BadRequestError(f"tokenId is invalid: {exc}") from exc

    return AccessRequest(
        address_claimed=address,
        message=message,
        signature=signature.strip() if signature is not None else None,
        token_id=token_id,
    )


def _normalize_signature(value: str) -> str:
    signature = value.strip()
    if not signature.startswith("0x"):
        signature = f"0x{signature}"
    if not SIGNATURE_PATTERN.fullmatch(signature):
        raise AuthenticationError("signature must be a 65-byte hex string")
    return signature


def recover_signer(message: str, signature: str) -> str:
    """Recover the lowercase address that personal-signed ``message``."""
    normalized = _normalize_signature(signature)
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=normalized)
    except Exception as exc:
        raise AuthenticationError("signature could not be verified") from exc
    return f"0x{recovered[2:].lower()}"


def resolve_credential(request: AccessRequest, allow_unverified: bool = False) -> Credential:
    if request.message is None or request.signature is None:
        if not allow_unverified or request.address_claimed is None:
            raise AuthenticationError("message and signature are required")
        logger.warning("Trusting unverified address %s", request.address_claimed)
        return UnverifiedCredential(address=request.address_claimed)

    signer = recover_signer(request.message, request.signature)
    if request.address_claimed is not None and signer != request.address_claimed:
        raise AuthenticationError("signature does not match address")
    return VerifiedCredential(address=signer, message=request.message, signature=request.signature)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _nonce_table(config: GateConfig) -> Any:
    return boto3.resource("dynamodb").Table(config.nonce_table_name)


def extract_nonce(message: str) -> str | None:
    match = NONCE_IN_MESSAGE_PATTERN.search(message)
    return match.group(0).lower() if match else None


def issue_nonce(nonce_table: Any, ttl_seconds: int, now: int) -> dict[str, Any]:
    nonce = f"0x{secrets.token_hex(32)}"
    expires_at = now + ttl_seconds
    nonce_table.put_item(
        Item={"nonce": nonce, "issued_at": now, "expires_at": expires_at},
        ConditionExpression="attribute_not_exists(nonce)",
    )
    return {"nonce": nonce, "expires_at": expires_at}


def consume_nonce(nonce_table: Any, nonce: str, now: int) -> None:
    try:
        nonce_table.delete_item(
            Key={"nonce": nonce},
            ConditionExpression="attribute_exists(nonce) AND expires_at > :now",
            ExpressionAttributeValues={":now": now},
        )
    except ClientError as exc:
        if _error_code(exc) == "ConditionalCheckFailedException":
            raise AuthenticationError("nonce is unknown, expired, or already used") from exc
        raise


def enforce_nonce(credential: Credential, nonce_table: Any, now: int) -> str:
    if not isinstance(credential, VerifiedCredential):
        raise AuthenticationError("a signed message is required")
    nonce = extract_nonce(credential.message)
    if nonce is None:
        raise AuthenticationError("signed message must include an issued nonce")
    consume_nonce(nonce_table, nonce, now)
    return nonce


def _encode_word(abi_type: str, value: Any) -> bytes:
    if abi_type == "address":
        return bytes.fromhex(str(value)[2:]).rjust(32, b"\x00")
    if abi_type == "uint256":
        return int(value).to_bytes(32, "big")
    raise ValueError(f"unsupported argument type: {abi_type}")


def encode_call_data(call: ViewCall) -> str:
    argument_types = call.argument_types
    if len(argument_types) != len(call.args):
        raise ValueError(f"{call.function_signature} expects {len(argument_types)} arguments")
    selector = function_signature_to_4byte_selector(call.function_signature)
    encoded_args = b"".join(_encode_word(abi_type, value) for abi_type, value in zip(argument_types, call.args))
    return "0x" + (selector + encoded_args).hex()


def decode_uint_result(result: Any) -> int:
    if not isinstance(result, str) or not HEX_RESULT_PATTERN.fullmatch(result):
        raise UpstreamError("RPC response is missing a hex result")
    return int(result[2:66], 16)


class RawEthCallReader:
    """Reads a uint256 view function with a hand-encoded JSON-RPC eth_call."""

    def __init__(self, rpc_url: str, timeout: float, http: Any | None = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.http = http or requests.Session()

    def read_uint(self, call: ViewCall) -> int:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [{"to": call.contract_address, "data": encode_call_data(call)}, "latest"],
        }
        try:
            response = self.http.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise UpstreamTimeoutError("RPC request timed out") from exc
        except requests.RequestException as exc:
            raise UpstreamError("RPC request failed") from exc

        if not 200 <= response.status_code < 300:
            raise UpstreamError(f"RPC returned HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError("RPC returned malformed JSON") from exc
        if not isinstance(body, dict):
            raise UpstreamError("RPC returned malformed JSON")
        if body.get("error") is not None:
            logger.warning("RPC error for %s: %s", call.function_signature, body["error"])
            raise UpstreamError("RPC returned an error")
        return decode_uint_result(body.get("result"))


def _uint_view_abi(call: ViewCall) -> dict[str, Any]:
    return {
        "type": "function",
        "name": call.function_name,
        "stateMutability": "view",
        "inputs": [{"name": f"arg{index}", "type": abi_type} for index, abi_type in enumerate(call.argument_types)],
        "outputs": [{"name": "", "type": "uint256"}],
    }


class Web3ContractReader:
    """Reads a uint256 view function through the web3.py contract abstraction."""

    def __init__(self, rpc_url: str, timeout: float, web3: Any | None = None):
        if web3 is None:
            try:
                from web3 import Web3
            except ImportError as exc:  # pragma: no cover - runtime dependency guard
                raise RuntimeError("web3 dependency is required for OWNERSHIP_READER=web3") from exc
            web3 = Web3(
                Web3.HTTPProvider(
                    rpc_url,
                    request_kwargs={"timeout": timeout},
                    exception_retry_configuration=None,
                )
            )
        self.web3 = web3

    def read_uint(self, call: ViewCall) -> int:
        from web3 import Web3
        from web3.exceptions import Web3Exception

        contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(call.contract_address),
            abi=[_uint_view_abi(call)],
        )
        args = [
            Web3.to_checksum_address(value) if abi_type == "address" else int(value)
            for abi_type, value in zip(call.argument_types, call.args)
        ]
        try:
            value = getattr(contract.functions, call.function_name)(*args).call(block_identifier="latest")
        except requests.Timeout as exc:
            raise UpstreamTimeoutError("RPC request timed out") from exc
        except (Web3Exception, requests.RequestException, ValueError) as exc:
            logger.warning("web3 call %s failed: %s", call.function_signature, type(exc).__name__)
            raise UpstreamError("RPC request failed") from exc
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise UpstreamError("RPC returned a non-integer result")
        return value


def build_ownership_reader(config: GateConfig, http: Any | None = None) -> RawEthCallReader | Web3ContractReader:
    if config.ownership_reader == "web3":
        return Web3ContractReader(config.rpc_url, config.rpc_timeout)
    return RawEthCallReader(config.rpc_url, config.rpc_timeout, http=http)


def check_ownership(query: OwnershipQuery, reader: Any) -> OwnershipResult:
    return OwnershipResult(balance=reader.read_uint(query.view_call()))


def candidate_paths(config: GateConfig, token_id: int | None = None) -> list[str]:
    ordered: list[str] = []
    if config.path_override:
        ordered.append(config.path_override)
    if token_id is not None:
        ordered.append(f"{token_id}.pdf")
    ordered.extend(CANDIDATE_DOCUMENT_PATHS)

    unique: list[str] = []
    for path in ordered:
        if path not in unique:
            unique.append(path)
    return unique


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def _looks_like_pdf(response: Any, path: str) -> bool:
    content_type = str(response.headers.get("Content-Type") or "").lower()
    return "pdf" in content_type or path.lower().endswith(".pdf")


def probe_document(location: DocumentLocation, http: Any, timeout: float) -> bool:
    """HEAD the candidate, falling back to a one-byte ranged GET when HEAD is refused."""
    try:
        response = http.head(location.url, allow_redirects=True, timeout=timeout)
    except requests.RequestException as exc:
        logger.info("HEAD probe failed for %s: %s", location.label, type(exc).__name__)
    else:
        if _is_success(response.status_code):
            return _looks_like_pdf(response, location.path)

    try:
        response = http.get(
            location.url,
            headers={"Range": "bytes=0-0"},
            stream=True,
            allow_redirects=True,
            timeout=timeout,
        )
    except requests.RequestException as exc:
        logger.info("Ranged GET probe failed for %s: %s", location.label, type(exc).__name__)
        return False
    try:
        return _is_success(response.status_code) and _looks_like_pdf(response, location.path)
    finally:
        response.close()


def resolve_document(config: GateConfig, token_id: int | None, http: Any) -> DocumentLocation:
    if config.docs_file:
        return DocumentLocation(config.gateway_url, config.docs_cid, config.docs_file)
    if not config.path_discovery:
        return DocumentLocation(config.gateway_url, config.docs_cid)

    tried: list[str] = []
    for path in candidate_paths(config, token_id):
        location = DocumentLocation(config.gateway_url, config.docs_cid, path)
        tried.append(location.label)
        if probe_document(location, http, config.probe_timeout):
            return location
    raise DocumentNotFoundError(message="Document not found on gateway", tried=tuple(tried))


def fetch_document(location: DocumentLocation, http: Any, timeout: float) -> bytes:
    try:
        response = http.get(location.url, timeout=timeout)
    except requests.Timeout as exc:
        raise UpstreamTimeoutError("Document gateway timed out") from exc
    except requests.RequestException as exc:
        raise UpstreamError("Document gateway request failed") from exc
    if not _is_success(response.status_code):
        raise UpstreamError(f"Document gateway returned HTTP {response.status_code}")
    return response.content


def _effective_token_id(requested: int | None, configured: int | None) -> int | None:
    if configured is None:
        return requested
    if requested is not None and requested != configured:
        raise BadRequestError("tokenId does not match the gated token")
    return configured


def _handle_get(event: dict[str, Any], config: GateConfig, nonce_table: Any | None, now: int | None) -> dict[str, Any]:
    params = _query_params(event)
    if str(params.get("nonce") or "").strip().lower() not in TRUE_VALUES:
        return _response(200, {"status": "ok"})
    if not config.nonce_binding:
        return _error_response(404, "nonce_disabled", "Nonce issuance is not enabled")

    issued = issue_nonce(
        nonce_table or _nonce_table(config),
        ttl_seconds=config.nonce_ttl_seconds,
        now=int(time.time()) if now is None else now,
    )
    return _response(200, issued, headers={"Cache-Control": "no-store"})


def _handle_post(
    event: dict[str, Any],
    config: GateConfig,
    http: Any | None,
    reader: Any | None,
    nonce_table: Any | None,
    now: int | None,
) -> dict[str, Any]:
    request = parse_input(event)
    token_id = _effective_token_id(request.token_id, config.token_id)
    credential = resolve_credential(request, allow_unverified=config.allow_unverified)

    if config.nonce_binding:
        enforce_nonce(
            credential,
            nonce_table or _nonce_table(config),
            now=int(time.time()) if now is None else now,
        )

    owns_session = http is None
    http = http or requests.Session()
    try:
        reader = reader or build_ownership_reader(config, http=http)
        query = OwnershipQuery(config.contract_address, credential.address, token_id)
        result = check_ownership(query, reader)
        if not result.granted:
            logger.info("Access denied for %s: no token", credential.address)
            raise AccessDeniedError("Address holds no token for this document")
        logger.info("Access granted for %s", credential.address)

        location = resolve_document(config, token_id, http)
        if config.response_mode == "redirect":
            return _response(200, {"url": location.url}, headers={"Cache-Control": "no-store"})
        return _pdf_response(fetch_document(location, http, config.gateway_timeout), location.filename)
    finally:
        if owns_session:
            http.close()


def handle_request(
    event: dict[str, Any],
    config: GateConfig | None = None,
    *,
    http: Any | None = None,
    reader: Any | None = None,
    nonce_table: Any | None = None,
    now: int | None = None,
) -> dict[str, Any]:
    try:
        method = _request_method(event)
        if method not in SUPPORTED_METHODS:
            raise MethodNotAllowedError("Only GET and POST are supported")
        config = config or runtime_config()
        if method == "GET":
            return _handle_get(event, config, nonce_table=nonce_table, now=now)
        return _handle_post(event, config, http=http, reader=reader, nonce_table=nonce_table, now=now)
    except BadRequestError as exc:
        return _error_response(400, "bad_request", str(exc))
    except AuthenticationError as exc:
        logger.info("Authentication failed: %s", exc)
        return _error_response(401, "unauthorized", str(exc))
    except AccessDeniedError as exc:
        return _error_response(403, "no_token", str(exc))
    except DocumentNotFoundError as exc:
        logger.warning("Document not located; tried %s", ", ".join(exc.tried))
        return _error_response(404, "document_not_found", exc.message, tried=list(exc.tried))
    except MethodNotAllowedError as exc:
        return _error_response(405, "method_not_allowed", str(exc), headers={"Allow": ", ".join(SUPPORTED_METHODS)})
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc.message)
        return _error_response(500, "misconfigured", exc.message, missing=list(exc.missing) or None)
    except UpstreamTimeoutError as exc:
        logger.warning("Upstream timeout: %s", exc)
        return _error_response(504, "upstream_timeout", str(exc))
    except UpstreamError as exc:
        logger.warning("Upstream failure: %s", exc)
        return _error_response(502, "upstream_error", str(exc))
    except Exception:
        logger.exception("Unhandled error in document access handler")
        return _error_response(500, "internal_error", "Internal error")


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    return handle_request(event)
