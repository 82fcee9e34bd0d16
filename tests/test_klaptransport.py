import hashlib
import logging
import secrets
import time
from contextlib import nullcontext as does_not_raise

import aiohttp
import pytest

from tapoklap.credentials import (
    DEFAULT_CREDENTIALS,
    Credentials,
    get_default_credentials,
)
from tapoklap.deviceconfig import DeviceConfig
from tapoklap.exceptions import (
    AuthenticationError,
    DecryptError,
    DiscoveryTimeout,
    HandshakeError,
    KlapException,
    RequestError,
    SessionExpiredError,
)
from tapoklap.json import dumps as json_dumps
from tapoklap.transports.klaptransport import (
    SEQ_MAX,
    SEQ_MIN,
    KlapEncryptionSession,
    KlapTransport,
    _sha256,
    derive_cipher_material,
)

from .conftest import DEVICE_CREDENTIALS, DEVICE_HOST
from .fakeklapdevice import FakeKlapDevice, _mock_response, mock_post_response

GET_INFO = json_dumps({"method": "get_device_info"})


def _session() -> KlapEncryptionSession:
    seed = secrets.token_bytes(16)
    auth_hash = KlapTransport.generate_auth_hash(Credentials("foo", "bar"))
    return KlapEncryptionSession(seed, seed, auth_hash)


def test_generate_auth_hash():
    expected = hashlib.sha256(
        hashlib.sha1(b"a@b.com").digest() + hashlib.sha1(b"pw").digest()
    ).digest()

    auth_hash = KlapTransport.generate_auth_hash(Credentials("a@b.com", "pw"))

    assert auth_hash == expected
    assert len(auth_hash) == 32
    assert auth_hash == KlapTransport.generate_auth_hash(Credentials("a@b.com", "pw"))
    # No case normalization
    assert auth_hash != KlapTransport.generate_auth_hash(Credentials("A@B.com", "pw"))


def test_derive_cipher_material():
    local_seed = bytes(range(16))
    remote_seed = bytes(range(16, 32))
    auth_hash = bytes(range(32, 64))
    payload = local_seed + remote_seed + auth_hash

    material = derive_cipher_material(local_seed, remote_seed, auth_hash)

    assert material.key == _sha256(b"lsk" + payload)[:16]
    fulliv = _sha256(b"iv" + payload)
    assert material.iv == fulliv[:12]
    assert material.seq == int.from_bytes(fulliv[12:16], "big", signed=True)
    assert material.sig == _sha256(b"ldk" + payload)[:28]
    assert material == derive_cipher_material(local_seed, remote_seed, auth_hash)


def test_encrypt():
    d = json_dumps({"foo": 1, "bar": 2})
    encryption_session = _session()

    encrypted, seq = encryption_session.encrypt(d)

    assert d == encryption_session.decrypt(encrypted, seq)


def test_encrypt_unicode():
    d = "{'snowman': '☃'}"
    encryption_session = _session()

    encrypted, seq = encryption_session.encrypt(d)

    assert d == encryption_session.decrypt(encrypted, seq)


def test_encrypt_signature():
    encryption_session = _session()
    material = derive_cipher_material(
        encryption_session.local_seed,
        encryption_session.remote_seed,
        encryption_session.user_hash,
    )

    encrypted, seq = encryption_session.encrypt("{}")

    signature, ciphertext = encrypted[:32], encrypted[32:]
    assert len(ciphertext) % 16 == 0
    packed_seq = seq.to_bytes(4, "big", signed=True)
    assert signature == _sha256(material.sig + packed_seq + ciphertext)


def test_encrypt_increments_seq():
    encryption_session = _session()
    initial = encryption_session.seq

    seqs = [encryption_session.encrypt("{}")[1] for _ in range(5)]

    assert seqs == [initial + i for i in range(1, 6)]
    assert encryption_session.seq == seqs[-1]


def test_encrypt_seq_wraps():
    encryption_session = _session()
    encryption_session._seq = SEQ_MAX

    encrypted, seq = encryption_session.encrypt("wrapped")

    assert seq == SEQ_MIN
    assert encryption_session.decrypt(encrypted, seq) == "wrapped"
    assert encryption_session.encrypt("next")[1] == SEQ_MIN + 1


@pytest.mark.parametrize(
    "payload",
    [
        pytest.param(b"", id="empty"),
        pytest.param(secrets.token_bytes(32), id="signature-only"),
        pytest.param(secrets.token_bytes(32 + 15), id="not-block-aligned"),
        pytest.param(secrets.token_bytes(32 + 32), id="bad-padding"),
    ],
)
def test_decrypt_invalid(payload):
    encryption_session = _session()

    with pytest.raises(DecryptError):
        encryption_session.decrypt(payload, 1)


@pytest.mark.parametrize(
    "device_credentials, expectation",
    [
        (Credentials("foo", "bar"), does_not_raise()),
        (Credentials(), does_not_raise()),
        (get_default_credentials(DEFAULT_CREDENTIALS["TAPO"]), does_not_raise()),
        (Credentials("shouldfail", "shouldfail"), pytest.raises(AuthenticationError)),
    ],
    ids=("client", "blank", "tapo_setup", "shouldfail"),
)
async def test_handshake1(mocker, device_credentials, expectation):
    device = FakeKlapDevice(credentials=device_credentials)
    mocker.patch.object(aiohttp.ClientSession, "post", side_effect=device.post)

    config = DeviceConfig("127.0.0.1", credentials=Credentials("foo", "bar"))
    transport = KlapTransport(config=config)

    with expectation:
        local_seed, remote_seed, auth_hash = await transport.perform_handshake1()

        assert local_seed == device.local_seed
        assert remote_seed == device.remote_seed
        assert auth_hash == device.auth_hash
    await transport.close()


def test_fallback_order():
    """Blank credentials are tried before the default setup credentials."""
    transport = KlapTransport(
        config=DeviceConfig("127.0.0.1", credentials=Credentials("foo", "bar"))
    )

    fallbacks = transport._get_fallback_auth_hashes()

    assert list(fallbacks) == ["blank", "TAPO"]
    assert fallbacks["blank"] == KlapTransport.generate_auth_hash(Credentials())
    assert transport._credentials == Credentials("foo", "bar")


def test_fallback_skips_blank_for_blank_credentials():
    transport = KlapTransport(config=DeviceConfig("127.0.0.1"))

    assert list(transport._get_fallback_auth_hashes()) == ["TAPO"]


async def test_handshake(fake_device, device_config):
    transport = KlapTransport(config=device_config)

    await transport.perform_handshake()

    assert transport.is_authenticated is True
    assert transport.auth_hash == fake_device.auth_hash
    assert fake_device.handshake1_count == 1
    assert fake_device.handshake2_count == 1

    fake_device.handshake2_status = 403
    with pytest.raises(HandshakeError):
        await transport.perform_handshake()
    assert transport.is_authenticated is False
    assert transport.auth_hash is None
    await transport.close()


async def test_handshake_timeout(mocker, device_config):
    mocker.patch.object(
        aiohttp.ClientSession,
        "post",
        side_effect=aiohttp.ServerTimeoutError("dummy exception"),
    )
    transport = KlapTransport(config=device_config)

    with pytest.raises(HandshakeError):
        await transport.perform_handshake()
    assert transport.is_authenticated is False


async def test_query(fake_device, device_config):
    transport = KlapTransport(config=device_config)

    last_seq = None
    for _ in range(10):
        resp = await transport.send(GET_INFO)
        assert resp["error_code"] == 0
        assert resp["result"]["model"] == "L530"
        seq = fake_device.seqs[-1]
        # Check the transport is incrementing the sequence number
        assert last_seq is None or last_seq + 1 == seq
        last_seq = seq

    assert fake_device.handshake1_count == 1
    await transport.close()


async def test_send_handshakes_when_session_expired(fake_device, device_config):
    transport = KlapTransport(config=device_config)
    await transport.send(GET_INFO)

    transport._session_expire_at = time.time() - 1
    await transport.send(GET_INFO)

    assert fake_device.handshake1_count == 2
    await transport.close()


async def test_send_403_expires_session(fake_device, device_config):
    transport = KlapTransport(config=device_config)
    await transport.send(GET_INFO)
    fake_device.expire_next = 1

    with pytest.raises(SessionExpiredError) as exc_info:
        await transport.send(GET_INFO)

    assert isinstance(exc_info.value, RequestError)
    assert exc_info.value.status == 403
    assert transport.is_authenticated is False
    await transport.close()


@pytest.mark.parametrize(
    "response_status, device_credentials, expectation",
    [
        pytest.param(
            (403, 403, 403),
            DEVICE_CREDENTIALS,
            pytest.raises(HandshakeError),
            id="handshake1-403-status",
        ),
        pytest.param(
            (200, 403, 403),
            DEVICE_CREDENTIALS,
            pytest.raises(HandshakeError),
            id="handshake2-403-status",
        ),
        pytest.param(
            (200, 200, 403),
            DEVICE_CREDENTIALS,
            pytest.raises(SessionExpiredError),
            id="request-403-status",
        ),
        pytest.param(
            (200, 200, 400),
            DEVICE_CREDENTIALS,
            pytest.raises(RequestError, match="400"),
            id="request-400-status",
        ),
        pytest.param(
            (200, 200, 200),
            Credentials("bar", "foo"),
            pytest.raises(AuthenticationError),
            id="handshake1-wrong-auth",
        ),
    ],
)
async def test_authentication_failures(
    mocker, device_config, response_status, device_credentials, expectation
):
    device = FakeKlapDevice(DEVICE_HOST, credentials=device_credentials)
    device.handshake1_status, device.handshake2_status, device.request_status = (
        response_status
    )
    mocker.patch.object(aiohttp.ClientSession, "post", side_effect=device.post)

    transport = KlapTransport(config=device_config)

    with expectation:
        await transport.send(GET_INFO)
    await transport.close()


async def test_handshake1_bad_length(mocker, device_config):
    mocker.patch.object(
        aiohttp.ClientSession,
        "post",
        side_effect=mock_post_response(200, secrets.token_bytes(40)),
    )
    transport = KlapTransport(config=device_config)

    with pytest.raises(HandshakeError, match="unexpected klap response"):
        await transport.perform_handshake1()


async def test_send_invalid_json(mocker, fake_device, device_config):
    transport = KlapTransport(config=device_config)
    await transport.perform_handshake()

    async def _return_garbage(url, params=None, data=None, *_, **__):
        session = KlapEncryptionSession(
            fake_device.local_seed, fake_device.remote_seed, fake_device.auth_hash
        )
        session._seq = params["seq"] - 1
        encrypted, _ = session.encrypt("not json")
        return _mock_response(200, encrypted)

    mocker.patch.object(aiohttp.ClientSession, "post", side_effect=_return_garbage)

    with pytest.raises(DecryptError):
        await transport.send(GET_INFO)
    await transport.close()


async def test_port_override():
    """Test that port override sets the app_url."""
    host = "127.0.0.1"
    config = DeviceConfig(
        host, credentials=Credentials("foo", "bar"), port_override=12345
    )
    transport = KlapTransport(config=config)

    assert str(transport._app_url) == "http://127.0.0.1:12345/app"


async def test_port_override_query(mocker, device_config):
    device = FakeKlapDevice(DEVICE_HOST, credentials=DEVICE_CREDENTIALS, port=8080)
    mocker.patch.object(aiohttp.ClientSession, "post", side_effect=device.post)
    device_config.port_override = 8080

    transport = KlapTransport(config=device_config)
    resp = await transport.send(GET_INFO)

    assert resp["result"]["device_id"] == device.info["device_id"]
    await transport.close()


@pytest.mark.parametrize(
    ("status", "expected"),
    [(200, True), (404, False)],
)
async def test_probe(mocker, status, expected):
    post = mocker.patch.object(
        aiohttp.ClientSession,
        "post",
        side_effect=mock_post_response(status),
    )
    transport = KlapTransport(config=DeviceConfig("127.0.0.1", timeout=2))

    assert await transport.perform_probe() is expected
    assert post.call_args.args[0].path == "/app/handshake1"
    assert len(post.call_args.kwargs["data"]) == 16
    await transport.close()


async def test_probe_timeout(mocker):
    mocker.patch.object(
        aiohttp.ClientSession,
        "post",
        side_effect=aiohttp.ServerTimeoutError("dummy exception"),
    )
    transport = KlapTransport(config=DeviceConfig("127.0.0.1", timeout=2))

    with pytest.raises(DiscoveryTimeout):
        await transport.perform_probe()
    await transport.close()


async def test_probe_connection_error(mocker):
    mocker.patch.object(
        aiohttp.ClientSession,
        "post",
        side_effect=aiohttp.ClientOSError("dummy exception"),
    )
    transport = KlapTransport(config=DeviceConfig("127.0.0.1", timeout=2))

    with pytest.raises(KlapException):
        await transport.perform_probe()
    await transport.close()


async def test_reachability_check_timeout_override(mocker):
    post = mocker.patch.object(
        aiohttp.ClientSession,
        "post",
        side_effect=mock_post_response(200),
    )
    transport = KlapTransport(config=DeviceConfig("127.0.0.1", timeout=2))

    assert await transport.perform_probe(timeout=0.5) is True
    assert post.call_args.kwargs["timeout"].total == 0.5
    assert "headers" not in post.call_args.kwargs

    await transport.perform_probe()
    assert post.call_args.kwargs["timeout"].total == 2
    await transport.close()


@pytest.mark.parametrize("log_level", [logging.WARNING, logging.DEBUG])
async def test_transport_logging(fake_device, device_config, caplog, log_level):
    caplog.set_level(log_level)
    logging.getLogger("tapoklap").setLevel(log_level)
    transport = KlapTransport(config=device_config)

    response = await transport.send(GET_INFO)

    assert response["result"]["model"] == "L530"
    if log_level == logging.DEBUG:
        assert "L530" in caplog.text
        # Identifying data is redacted
        assert fake_device.info["device_id"] not in caplog.text
        assert fake_device.info["nickname"] not in caplog.text
    else:
        assert "L530" not in caplog.text
    await transport.close()
