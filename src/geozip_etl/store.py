"""geozip_etl.store

Key-value store adapters for the geo_zip table.

Every adapter speaks the same three calls, keyed by the integer zip:

  get_item(zip)            -> stored item dict, or None when the key is absent
  put_item(item)           -> write the whole item (item["Zip"] is the key)
  update_item(zip, fields) -> overwrite only the given top-level attributes

A clean "not found" is never an exception. Anything else that goes wrong on
the probe raises ProbeError; anything that goes wrong on a write raises
WriteError.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from decimal import Decimal, DecimalException
from typing import Any, Protocol

import boto3
import psycopg
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError
from psycopg.types.json import Jsonb

DEFAULT_TABLE = "geo_zip"
DEFAULT_AWS_REGION = "us-east-1"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ProbeError(Exception):
    """Existence check failed for a reason other than a missing key."""


class WriteError(Exception):
    """Insert or update call failed."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class RegionStore(Protocol):
    def get_item(self, zip_code: int) -> dict[str, Any] | None:
        ...

    def put_item(self, item: dict[str, Any]) -> None:
        ...

    def update_item(self, zip_code: int, fields: dict[str, Any]) -> None:
        ...

    def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL (jsonb document per zip)
# ---------------------------------------------------------------------------

class PostgresRegionStore:
    """geo_zip table in PostgreSQL; see migrations/0001_geo_zip.sql.

    The connection runs in autocommit mode: each call is its own statement,
    so a failed write never poisons the next record.
    """

    def __init__(self, conn: psycopg.Connection, table_name: str = DEFAULT_TABLE) -> None:
        self._conn = conn
        self._table = table_name

    @classmethod
    def connect(cls, dsn: str, table_name: str = DEFAULT_TABLE) -> PostgresRegionStore:
        return cls(psycopg.connect(dsn, autocommit=True), table_name)

    def get_item(self, zip_code: int) -> dict[str, Any] | None:
        try:
            row = self._conn.execute(
                f"SELECT item FROM {self._table} WHERE zip = %s",
                (zip_code,),
            ).fetchone()
        except psycopg.Error as exc:
            raise ProbeError(f"get_item zip={zip_code}: {exc}") from exc
        return row[0] if row else None

    def put_item(self, item: dict[str, Any]) -> None:
        zip_code = item["Zip"]
        try:
            self._conn.execute(
                f"""
                INSERT INTO {self._table} (zip, item)
                VALUES (%s, %s)
                ON CONFLICT (zip) DO UPDATE SET
                  item = EXCLUDED.item,
                  updated_at = now()
                """,
                (zip_code, Jsonb(item)),
            )
        except psycopg.Error as exc:
            raise WriteError(f"put_item zip={zip_code}: {exc}") from exc

    def update_item(self, zip_code: int, fields: dict[str, Any]) -> None:
        try:
            cur = self._conn.execute(
                f"""
                UPDATE {self._table}
                SET item = item || %s,
                    updated_at = now()
                WHERE zip = %s
                """,
                (Jsonb(fields), zip_code),
            )
        except psycopg.Error as exc:
            raise WriteError(f"update_item zip={zip_code}: {exc}") from exc
        if cur.rowcount == 0:
            raise WriteError(f"update_item zip={zip_code}: item no longer exists")

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# DynamoDB
# ---------------------------------------------------------------------------

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _to_dynamo_value(value: Any) -> Any:
    """Floats become Decimals built from repr(), keeping every digit.

    Subnormal floats fall outside the DynamoDB number range; serializing one
    raises a DecimalException, reported by the writers as WriteError.
    """
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, dict):
        return {k: _to_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo_value(v) for v in value]
    return value


def _from_dynamo_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == value.to_integral_value() and value.as_tuple().exponent >= 0:
            return int(value)
        return float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo_value(v) for v in value]
    return value


def to_attribute_value(value: Any) -> dict[str, Any]:
    return _serializer.serialize(_to_dynamo_value(value))


def from_attribute_map(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _from_dynamo_value(_deserializer.deserialize(v)) for k, v in item.items()}


class DynamoRegionStore:
    """geo_zip table in DynamoDB, partition key ``Zip`` (number)."""

    def __init__(self, client: Any, table_name: str = DEFAULT_TABLE) -> None:
        self._client = client
        self._table = table_name

    @classmethod
    def from_credentials(
        cls,
        region: str = DEFAULT_AWS_REGION,
        access_key: str | None = None,
        secret_key: str | None = None,
        table_name: str = DEFAULT_TABLE,
    ) -> DynamoRegionStore:
        # Empty credentials fall through to boto3's default provider chain.
        session = boto3.Session(
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region,
        )
        return cls(session.client("dynamodb"), table_name)

    def _key(self, zip_code: int) -> dict[str, Any]:
        return {"Zip": to_attribute_value(zip_code)}

    def get_item(self, zip_code: int) -> dict[str, Any] | None:
        try:
            resp = self._client.get_item(TableName=self._table, Key=self._key(zip_code))
        except (ClientError, BotoCoreError) as exc:
            raise ProbeError(f"GetItem zip={zip_code}: {exc}") from exc
        item = resp.get("Item")
        return from_attribute_map(item) if item else None

    def put_item(self, item: dict[str, Any]) -> None:
        try:
            self._client.put_item(
                TableName=self._table,
                Item={k: to_attribute_value(v) for k, v in item.items()},
            )
        except (ClientError, BotoCoreError, DecimalException) as exc:
            raise WriteError(f"PutItem zip={item['Zip']}: {exc}") from exc

    def update_item(self, zip_code: int, fields: dict[str, Any]) -> None:
        names = {f"#{name.lower()}": name for name in fields}
        names["#pk"] = "Zip"
        expression = "SET " + ", ".join(
            f"#{name.lower()} = :{name.lower()}" for name in fields
        )
        try:
            values = {f":{name.lower()}": to_attribute_value(v) for name, v in fields.items()}
            self._client.update_item(
                TableName=self._table,
                Key=self._key(zip_code),
                UpdateExpression=expression,
                ConditionExpression="attribute_exists(#pk)",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except (ClientError, BotoCoreError, DecimalException) as exc:
            raise WriteError(f"UpdateItem zip={zip_code}: {exc}") from exc

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# In-memory (tests, local dry runs)
# ---------------------------------------------------------------------------

@dataclass
class InMemoryRegionStore:
    """Dict-backed store that records every call.

    ``probe_errors`` / ``write_errors`` map a zip to the message of an
    error to raise on that call.
    """

    items: dict[int, dict[str, Any]] = field(default_factory=dict)
    probe_errors: dict[int, str] = field(default_factory=dict)
    write_errors: dict[int, str] = field(default_factory=dict)
    calls: list[tuple[str, int]] = field(default_factory=list)

    def get_item(self, zip_code: int) -> dict[str, Any] | None:
        self.calls.append(("get", zip_code))
        if zip_code in self.probe_errors:
            raise ProbeError(self.probe_errors[zip_code])
        item = self.items.get(zip_code)
        return copy.deepcopy(item) if item is not None else None

    def put_item(self, item: dict[str, Any]) -> None:
        zip_code = item["Zip"]
        self.calls.append(("put", zip_code))
        if zip_code in self.write_errors:
            raise WriteError(self.write_errors[zip_code])
        self.items[zip_code] = copy.deepcopy(item)

    def update_item(self, zip_code: int, fields: dict[str, Any]) -> None:
        self.calls.append(("update", zip_code))
        if zip_code in self.write_errors:
            raise WriteError(self.write_errors[zip_code])
        if zip_code not in self.items:
            raise WriteError(f"update_item zip={zip_code}: item no longer exists")
        self.items[zip_code].update(copy.deepcopy(fields))

    def close(self) -> None:
        pass
