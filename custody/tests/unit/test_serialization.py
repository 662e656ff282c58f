"""
Test share serialization (canonical tagged envelope).
"""
import json
import pytest

from custody.core.keyshares.errors import DeserializationFailure, InvalidShare
from custody.core.keyshares.serialization import (
    serialize_share,
    deserialize_share,
    SHARE_FORMAT,
    SHARE_FORMAT_VERSION,
)


def _envelope(**overrides):
    envelope = {
        "data": {"x": 1},
        "format": SHARE_FORMAT,
        "kind": "json",
        "owner": "profile-1",
        "version": SHARE_FORMAT_VERSION,
    }
    envelope.update(overrides)
    return json.dumps(envelope).encode("utf-8")


class TestSerializeShare:

    def test_dict_share(self):
        share = {"key_id": "abc", "x_i": "0x1234", "public_key": "04aa"}
        owner, value = deserialize_share(serialize_share("profile-1", share))

        assert owner == "profile-1"
        assert value == share

    def test_bytes_share(self):
        share = bytes(range(256))
        owner, value = deserialize_share(serialize_share("profile-1", share))

        assert value == share
        assert isinstance(value, bytes)

    def test_canonical_output(self):
        """Key order of the share does not change the serialized bytes."""
        a = serialize_share("o", {"b": 1, "a": [1, 2, {"d": None, "c": True}]})
        b = serialize_share("o", {"a": [1, 2, {"c": True, "d": None}], "b": 1})

        assert a == b
        assert b" " not in a

    def test_unicode_share(self):
        share = {"label": "Hello 世界"}
        _, value = deserialize_share(serialize_share("o", share))
        assert value == share

    def test_none_share_rejected(self):
        with pytest.raises(InvalidShare):
            serialize_share("o", None)

    def test_non_serializable_share_rejected(self):
        class NonSerializable:
            pass

        with pytest.raises(InvalidShare):
            serialize_share("o", {"obj": NonSerializable()})

    def test_nan_rejected(self):
        with pytest.raises(InvalidShare):
            serialize_share("o", {"x": float("nan")})

    def test_non_string_keys_rejected(self):
        """{1: "a"} would come back as {"1": "a"}."""
        with pytest.raises(InvalidShare, match="non-string key"):
            serialize_share("o", {1: "a", 2: "b"})
        with pytest.raises(InvalidShare):
            serialize_share("o", {"outer": {(1, 2): "x"}})

    def test_tuples_rejected(self):
        with pytest.raises(InvalidShare, match="tuple"):
            serialize_share("o", {"t": (1, 2)})
        with pytest.raises(InvalidShare):
            serialize_share("o", [1, [2, (3,)]])

    def test_scalar_share(self):
        _, value = deserialize_share(serialize_share("o", 42))
        assert value == 42

    def test_invalid_share_is_value_error(self):
        with pytest.raises(ValueError):
            serialize_share("o", {1, 2, 3})


class TestDeserializeShare:

    def test_not_json(self):
        with pytest.raises(DeserializationFailure):
            deserialize_share(b"\x00\x01 not json")

    def test_not_utf8(self):
        with pytest.raises(DeserializationFailure):
            deserialize_share(b"\xff\xfe\xfd")

    def test_plain_json_without_envelope(self):
        """A bare share (no tags) is rejected, not returned as-is."""
        with pytest.raises(DeserializationFailure):
            deserialize_share(b'{"x": 1}')

    def test_wrong_format_tag(self):
        with pytest.raises(DeserializationFailure, match="format"):
            deserialize_share(_envelope(format="something-else"))

    def test_unsupported_version(self):
        with pytest.raises(DeserializationFailure, match="version"):
            deserialize_share(_envelope(version=2))

    def test_unknown_kind(self):
        with pytest.raises(DeserializationFailure, match="kind"):
            deserialize_share(_envelope(kind="pickle"))

    def test_bad_base64(self):
        with pytest.raises(DeserializationFailure):
            deserialize_share(_envelope(kind="bytes", data="!!not base64!!"))

    def test_missing_owner(self):
        with pytest.raises(DeserializationFailure):
            deserialize_share(_envelope(owner=None))
