from __future__ import annotations

import pytest
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from entitlements.db.mongo import MongoDBManager, _store_errors
from entitlements.exceptions import DuplicateCodeError, StoreUnavailableError
from entitlements.models.activation_code import ActivationCode
from entitlements.models.plan import Plan


def test_duplicate_key_becomes_typed_conflict():
    with pytest.raises(DuplicateCodeError, match="already exists"):
        with _store_errors(DuplicateCodeError, "activation code AKM3QX7RZD already exists"):
            raise DuplicateKeyError("E11000 duplicate key error")


def test_duplicate_key_without_mapping_propagates():
    with pytest.raises(DuplicateKeyError):
        with _store_errors():
            raise DuplicateKeyError("E11000 duplicate key error")


def test_connection_failure_is_retryable():
    with pytest.raises(StoreUnavailableError):
        with _store_errors():
            raise ConnectionFailure("no primary")


def test_documents_round_trip_through_string_ids():
    code = ActivationCode(code="AKM3QX7RZD", plan=Plan.ONE_YEAR)
    doc = MongoDBManager._prepare_insert(code)

    assert doc["_id"] == code.id
    assert "id" not in doc
    assert doc["plan"] == "1year"

    decoded = MongoDBManager._decode(ActivationCode, doc)
    assert decoded.id == code.id
    assert decoded.code == "AKM3QX7RZD"
    assert decoded.plan == Plan.ONE_YEAR
    assert MongoDBManager._decode(ActivationCode, None) is None
