"""Implementation of the TP-Link KLAP transport.

The transport works by doing a two stage handshake to obtain an encryption
key and a session id cookie.

Authentication uses an auth_hash which is
sha256(sha1(username) + sha1(password))

handshake1: client sends a random 16 byte local_seed to the device and
receives a random 16 byte remote_seed, followed by
sha256(local_seed + remote_seed + auth_hash). It also returns a TP_SESSIONID
in the cookie header. This implementation checks that value against the
configured credentials first, then blank credentials (an unclaimed or reset
device) and finally the default setup credentials. If one matches it moves
onto handshake2 using the matching auth_hash.

handshake2: client sends sha256(remote_seed + local_seed + auth_hash) to the
device along with the TP_SESSIONID. Device responds with 200 if successful.

encryption: local_seed, remote_seed and auth_hash are now used for
encryption. The last 4 bytes of the initialization vector are used as a
sequence number that increments every time the client calls encrypt and this
sequence number is sent as a url parameter to the device along with the
encrypted payload.

https://gist.github.com/chriswheeldon/3b17d974db3817613c69191c0480fe55
"""

from __future__ import annotations

import datetime
import hashlib
import logging
import secrets
import struct
import time
from pprint import pformat as pf
from typing import TYPE_CHECKING, Any, NamedTuple, cast

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from yarl import URL

from ..credentials import DEFAULT_CREDENTIALS, Credentials, get_default_credentials
from ..deviceconfig import DeviceConfig
from ..exceptions import (
    AuthenticationError,
    DecryptError,
    DiscoveryTimeout,
    HandshakeError,
    KlapException,
    RequestError,
    SessionExpiredError,
    TimeoutError,
)
from ..httpclient import HttpClient
from ..json import loads as json_loads
from ..protocols.protocol import REDACTORS, redact_data
from .basetransport import BaseTransport

_LOGGER = logging.getLogger(__name__)


ONE_DAY_SECONDS = 86400
SESSION_EXPIRE_BUFFER_SECONDS = 60 * 20

SEQ_MAX = 2**31 - 1
SEQ_MIN = -(2**31)

PACK_SIGNED_LONG = struct.Struct(">l").pack

SIGNATURE_LENGTH = 32


def _sha256(payload: bytes) -> bytes:
    return hashlib.sha256(payload).digest()


def _sha1(payload: bytes) -> bytes:
    return hashlib.sha1(payload).digest()  # noqa: S324


class KlapCipherMaterial(NamedTuple):
    """Key material derived from a completed handshake."""

    key: bytes
    iv: bytes
    seq: int
    sig: bytes


def derive_cipher_material(
    local_seed: bytes, remote_seed: bytes, auth_hash: bytes
) -> KlapCipherMaterial:
    """Derive the key, iv, initial sequence and signature key for a session."""
    payload = local_seed + remote_seed + auth_hash
    key = _sha256(b"lsk" + payload)[:16]
    # The first 12 bytes are the fixed part of the iv, the following 4 bytes
    # are the initial sequence number.
    fulliv = _sha256(b"iv" + payload)
    seq = int.from_bytes(fulliv[12:16], "big", signed=True)
    sig = _sha256(b"ldk" + payload)[:28]
    return KlapCipherMaterial(key, fulliv[:12], seq, sig)


class KlapEncryptionSession:
    """Class to represent an encryption session and it's internal state.

    The derived key material never changes, only the sequence number which
    the device expects to increment with every request.
    """

    def __init__(self, local_seed: bytes, remote_seed: bytes, user_hash: bytes):
        self.local_seed = local_seed
        self.remote_seed = remote_seed
        self.user_hash = user_hash
        self._material = derive_cipher_material(local_seed, remote_seed, user_hash)
        self._seq = self._material.seq
        self._aes = algorithms.AES(self._material.key)

    @property
    def seq(self) -> int:
        """Return the sequence number of the last encrypted message."""
        return self._seq

    def _cipher(self, seq: int) -> Cipher:
        return Cipher(self._aes, modes.CBC(self._material.iv + PACK_SIGNED_LONG(seq)))

    def _signature(self, seq: int, ciphertext: bytes) -> bytes:
        return _sha256(self._material.sig + PACK_SIGNED_LONG(seq) + ciphertext)

    def encrypt(self, msg: str | bytes) -> tuple[bytes, int]:
        """Encrypt the data and increment the sequence number.

        Returns the signed payload and the sequence number it was encrypted
        with, which has to be passed to the device and back to :meth:`decrypt`.
        """
        self._seq = self._seq + 1 if self._seq < SEQ_MAX else SEQ_MIN
        seq = self._seq

        if isinstance(msg, str):
            msg = msg.encode("utf-8")

        encryptor = self._cipher(seq).encryptor()
        padder = padding.PKCS7(128).padder()
        padded_data = padder.update(msg) + padder.finalize()
        ciphertext = encryptor.update(padded_data) + encryptor.finalize()
        return (self._signature(seq, ciphertext) + ciphertext, seq)

    def decrypt(self, msg: bytes, seq: int) -> str:
        """Decrypt a response to the request sent with sequence number seq."""
        ciphertext = msg[SIGNATURE_LENGTH:]
        if not ciphertext or len(ciphertext) % 16:
            raise DecryptError(
                f"Invalid encrypted payload length {len(msg)} for seq {seq}"
            )
        decryptor = self._cipher(seq).decryptor()
        dp = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        try:
            plaintextbytes = unpadder.update(dp) + unpadder.finalize()
            return plaintextbytes.decode()
        except ValueError as ex:
            raise DecryptError(f"Unable to decrypt payload for seq {seq}") from ex


class KlapTransport(BaseTransport):
    """Implementation of the KLAP encryption protocol.

    KLAP is the name used in device discovery for TP-Link's encryption
    protocol, used by Tapo plugs and bulbs.
    """

    DEFAULT_PORT: int = 80
    SESSION_COOKIE_NAME = "TP_SESSIONID"
    TIMEOUT_COOKIE_NAME = "TIMEOUT"
    SESSION_EXPIRED_STATUS = 403

    def __init__(
        self,
        *,
        config: DeviceConfig,
    ) -> None:
        super().__init__(config=config)

        self._http_client = HttpClient(config)
        if not self._credentials:
            self._credentials = Credentials()
        self._local_auth_hash = self.generate_auth_hash(self._credentials)
        self._fallback_auth_hashes: dict[str, bytes] = {}
        self._session_auth_hash: bytes | None = None
        self._handshake_done = False

        self._encryption_session: KlapEncryptionSession | None = None
        self._session_expire_at: float | None = None

        self._session_cookie: dict[str, Any] | None = None

        _LOGGER.debug("Created KLAP transport for %s", self._host)
        self._app_url = URL(f"http://{self._host}:{self._port}/app")
        self._request_url = self._app_url / "request"

    @property
    def default_port(self) -> int:
        """Default port for the transport."""
        return self.DEFAULT_PORT

    @property
    def auth_hash(self) -> bytes | None:
        """The auth hash the device accepted during the last handshake."""
        return self._session_auth_hash

    @property
    def is_authenticated(self) -> bool:
        """Return True if the handshake completed and has not been reset."""
        return self._handshake_done

    def _get_fallback_auth_hashes(self) -> dict[str, bytes]:
        """Return the hashes to try when the configured credentials don't match.

        Blank credentials are tried before the default setup credentials.
        """
        if not self._fallback_auth_hashes:
            if self._credentials != Credentials():
                self._fallback_auth_hashes["blank"] = self.generate_auth_hash(
                    Credentials()
                )
            for key, value in DEFAULT_CREDENTIALS.items():
                self._fallback_auth_hashes[key] = self.generate_auth_hash(
                    get_default_credentials(value)
                )
        return self._fallback_auth_hashes

    async def perform_handshake1(self) -> tuple[bytes, bytes, bytes]:
        """Perform handshake1."""
        local_seed: bytes = secrets.token_bytes(16)

        # Handshake 1 has a payload of local_seed
        # and a response of 16 bytes, followed by
        # sha256(local_seed | remote_seed | auth_hash)

        payload = local_seed

        url = self._app_url / "handshake1"

        response_status, response_data = await self._http_client.post(url, data=payload)

        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug(
                "Handshake1 posted at %s. Host is %s, Response"
                + " status is %s, Request was %s",
                datetime.datetime.now(),
                self._host,
                response_status,
                payload.hex(),
            )

        if response_status != 200:
            raise HandshakeError(
                f"Device {self._host} responded with {response_status} to handshake1"
            )

        response_data = cast(bytes, response_data)
        remote_seed: bytes = response_data[0:16]
        server_hash = response_data[16:]

        if len(server_hash) != 32:
            raise HandshakeError(
                f"Device {self._host} responded with unexpected klap response "
                + f"{response_data!r} to handshake1"
            )

        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug(
                "Handshake1 success at %s. Host is %s, "
                + "Server remote_seed is: %s, server hash is: %s",
                datetime.datetime.now(),
                self._host,
                remote_seed.hex(),
                server_hash.hex(),
            )

        local_seed_auth_hash = self.handshake1_seed_auth_hash(
            local_seed, remote_seed, self._local_auth_hash
        )

        # Check the response from the device with local credentials
        if secrets.compare_digest(local_seed_auth_hash, server_hash):
            _LOGGER.debug("handshake1 hashes match with expected credentials")
            return local_seed, remote_seed, self._local_auth_hash

        for key, fallback_auth_hash in self._get_fallback_auth_hashes().items():
            fallback_seed_auth_hash = self.handshake1_seed_auth_hash(
                local_seed, remote_seed, fallback_auth_hash
            )
            if secrets.compare_digest(fallback_seed_auth_hash, server_hash):
                _LOGGER.debug(
                    "Server response doesn't match our expected hash on ip %s"
                    + " but an authentication with %s credentials matched",
                    self._host,
                    key,
                )
                return local_seed, remote_seed, fallback_auth_hash

        msg = f"Server response doesn't match our challenge on ip {self._host}"
        _LOGGER.debug(msg)
        raise AuthenticationError(msg)

    async def perform_handshake2(
        self, local_seed: bytes, remote_seed: bytes, auth_hash: bytes
    ) -> KlapEncryptionSession:
        """Perform handshake2."""
        # Handshake 2 has the following payload:
        #    sha256(remote_seed | local_seed | auth_hash)

        url = self._app_url / "handshake2"

        payload = self.handshake2_seed_auth_hash(local_seed, remote_seed, auth_hash)

        response_status, _ = await self._http_client.post(
            url,
            data=payload,
            cookies_dict=self._session_cookie,
        )

        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug(
                "Handshake2 posted %s.  Host is %s, Response status is %s, "
                + "Request was %s",
                datetime.datetime.now(),
                self._host,
                response_status,
                payload.hex(),
            )

        if response_status != 200:
            # This shouldn't be caused by incorrect
            # credentials so don't raise AuthenticationError
            raise HandshakeError(
                f"Device {self._host} responded with {response_status} to handshake2"
            )

        return KlapEncryptionSession(local_seed, remote_seed, auth_hash)

    async def perform_handshake(self) -> None:
        """Perform handshake1 and handshake2.

        Sets the encryption_session if successful.
        """
        _LOGGER.debug("Starting handshake with %s", self._host)
        self._handshake_done = False
        self._encryption_session = None
        self._session_auth_hash = None
        self._session_expire_at = None
        self._session_cookie = None

        try:
            local_seed, remote_seed, auth_hash = await self.perform_handshake1()
            http_client = self._http_client
            if cookie := http_client.get_cookie(self.SESSION_COOKIE_NAME):
                self._session_cookie = {self.SESSION_COOKIE_NAME: cookie}
            # The device returns a TIMEOUT cookie on handshake1 which
            # it doesn't like to get back so we store the one we want
            timeout = int(
                http_client.get_cookie(self.TIMEOUT_COOKIE_NAME) or ONE_DAY_SECONDS
            )
            encryption_session = await self.perform_handshake2(
                local_seed, remote_seed, auth_hash
            )
        except (AuthenticationError, HandshakeError):
            raise
        except KlapException as ex:
            raise HandshakeError(
                f"Unable to complete handshake with {self._host}: {ex}"
            ) from ex

        # There is a 24 hour timeout on the session cookie
        # but the clock on the device is not always accurate
        # so we set the expiry to 24 hours from now minus a buffer
        self._session_expire_at = time.time() + timeout - SESSION_EXPIRE_BUFFER_SECONDS
        self._encryption_session = encryption_session
        self._session_auth_hash = auth_hash
        self._handshake_done = True

        _LOGGER.debug("Handshake with %s complete", self._host)

    async def perform_probe(self, timeout: float | None = None) -> bool:
        """Post a throwaway seed to handshake1 and report if the host answered.

        The response is not verified, a 200 status is enough to mark the host
        as a KLAP device. timeout replaces the configured request timeout.
        """
        try:
            response_status, _ = await self._http_client.post(
                self._app_url / "handshake1",
                data=secrets.token_bytes(16),
                timeout=timeout,
            )
        except TimeoutError as ex:
            raise DiscoveryTimeout(f"No response from {self._host}") from ex
        return response_status == 200

    def _handshake_session_expired(self) -> bool:
        """Return true if session has expired."""
        return (
            self._session_expire_at is None
            or self._session_expire_at - time.time() <= 0
        )

    async def send(self, request: str) -> dict:
        """Send the request."""
        if not self._handshake_done or self._handshake_session_expired():
            await self.perform_handshake()

        if TYPE_CHECKING:
            assert self._encryption_session is not None
        encryption_session = self._encryption_session
        payload, seq = encryption_session.encrypt(request.encode())

        response_status, response_data = await self._http_client.post(
            self._request_url,
            params={"seq": seq},
            data=payload,
            cookies_dict=self._session_cookie,
        )

        msg = (
            f"Host is {self._host}, "
            + f"Sequence is {seq}, "
            + f"Response status is {response_status}"
        )
        if response_status != 200:
            _LOGGER.debug("Query failed after successful authentication " + msg)
            # If we failed with a security error, force a new handshake next time.
            if response_status == self.SESSION_EXPIRED_STATUS:
                self._handshake_done = False
                self._encryption_session = None
                raise SessionExpiredError(
                    f"Got a security error from {self._host} after handshake "
                    + "completed",
                    status=response_status,
                )
            raise RequestError(
                f"Device {self._host} responded with {response_status} to "
                + f"request with seq {seq}",
                status=response_status,
            )

        _LOGGER.debug("Query posted " + msg)

        decrypted_response = encryption_session.decrypt(
            cast(bytes, response_data), seq
        )
        try:
            json_payload = json_loads(decrypted_response)
        except ValueError as ex:
            raise DecryptError(
                f"Device {self._host} returned a payload that is not json"
            ) from ex

        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug(
                "%s << %s",
                self._host,
                pf(redact_data(json_payload, REDACTORS)),
            )

        return json_payload

    async def close(self) -> None:
        """Close the http client and reset internal state."""
        await self.reset()
        await self._http_client.close()

    async def reset(self) -> None:
        """Reset internal handshake state."""
        self._handshake_done = False
        self._encryption_session = None

    @staticmethod
    def generate_auth_hash(creds: Credentials) -> bytes:
        """Generate the auth hash for the protocol on the supplied credentials."""
        un = creds.username
        pw = creds.password

        return _sha256(_sha1(un.encode()) + _sha1(pw.encode()))

    @staticmethod
    def handshake1_seed_auth_hash(
        local_seed: bytes, remote_seed: bytes, auth_hash: bytes
    ) -> bytes:
        """Generate the hash the device returns from handshake1."""
        return _sha256(local_seed + remote_seed + auth_hash)

    @staticmethod
    def handshake2_seed_auth_hash(
        local_seed: bytes, remote_seed: bytes, auth_hash: bytes
    ) -> bytes:
        """Generate the hash the client sends to handshake2."""
        return _sha256(remote_seed + local_seed + auth_hash)
