"""Unit tests for DynamoRegionStore with a mocked boto3 client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from geozip_etl.store import (
    DynamoRegionStore,
    ProbeError,
    WriteError,
    from_attribute_map,
    to_attribute_value,
)


def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, op)


# ---------------------------------------------------------------------------
# Attribute encoding
# ---------------------------------------------------------------------------

class TestAttributeEncoding:
    def test_center_pair(self):
        assert to_attribute_value([40.75, -73.99]) == {"L": [{"N": "40.75"}, {"N": "-73.99"}]}

    def test_outline_points(self):
        assert to_attribute_value([{"Lat": 40.7, "Lng": -74.0}]) == {
            "L": [{"M": {"Lat": {"N": "40.7"}, "Lng": {"N": "-74.0"}}}]
        }

    def test_zip_is_integer_number(self):
        assert to_attribute_value(10001) == {"N": "10001"}

    def test_round_trip_keeps_full_precision(self):
        item = {
            "Zip": 10001,
            "Center": [40.712345678901234, -73.98765432109876],
            "Outline": [
                {"Lat": 1e-05, "Lng": 179.99999999999997},
                {"Lat": 40.7, "Lng": -74.0},
                {"Lat": 1e-05, "Lng": 179.99999999999997},
            ],
        }
        encoded = {k: to_attribute_value(v) for k, v in item.items()}
        assert from_attribute_map(encoded) == item


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

class TestDynamoRegionStore:
    def test_get_item_absent(self):
        client = MagicMock()
        client.get_item.return_value = {}
        store = DynamoRegionStore(client)
        assert store.get_item(10001) is None
        client.get_item.assert_called_once_with(
            TableName="geo_zip", Key={"Zip": {"N": "10001"}}
        )

    def test_get_item_present(self):
        client = MagicMock()
        client.get_item.return_value = {
            "Item": {
                "Zip": {"N": "10001"},
                "Center": {"L": [{"N": "40.75"}, {"N": "-73.99"}]},
                "City": {"S": "New York"},
            }
        }
        store = DynamoRegionStore(client, table_name="geo_zip_test")
        assert store.get_item(10001) == {
            "Zip": 10001,
            "Center": [40.75, -73.99],
            "City": "New York",
        }

    def test_get_item_client_error_is_probe_error(self):
        client = MagicMock()
        client.get_item.side_effect = _client_error("ProvisionedThroughputExceededException", "GetItem")
        with pytest.raises(ProbeError, match="ProvisionedThroughputExceededException"):
            DynamoRegionStore(client).get_item(10001)

    def test_get_item_connection_error_is_probe_error(self):
        client = MagicMock()
        client.get_item.side_effect = EndpointConnectionError(endpoint_url="https://dynamodb")
        with pytest.raises(ProbeError):
            DynamoRegionStore(client).get_item(10001)

    def test_put_item_encodes_item(self):
        client = MagicMock()
        DynamoRegionStore(client).put_item({
            "Zip": 10001,
            "Center": [40.75, -73.99],
            "Outline": [{"Lat": 40.7, "Lng": -74.0}, {"Lat": 40.8, "Lng": -73.9}],
        })
        client.put_item.assert_called_once_with(
            TableName="geo_zip",
            Item={
                "Zip": {"N": "10001"},
                "Center": {"L": [{"N": "40.75"}, {"N": "-73.99"}]},
                "Outline": {"L": [
                    {"M": {"Lat": {"N": "40.7"}, "Lng": {"N": "-74.0"}}},
                    {"M": {"Lat": {"N": "40.8"}, "Lng": {"N": "-73.9"}}},
                ]},
            },
        )

    def test_put_item_failure_is_write_error(self):
        client = MagicMock()
        client.put_item.side_effect = _client_error("ValidationException", "PutItem")
        with pytest.raises(WriteError, match="zip=10001"):
            DynamoRegionStore(client).put_item({"Zip": 10001, "Center": [0.0, 0.0], "Outline": []})

    def test_put_item_subnormal_coordinate_is_write_error(self):
        client = MagicMock()
        with pytest.raises(WriteError, match="PutItem zip=10001"):
            DynamoRegionStore(client).put_item({
                "Zip": 10001,
                "Center": [40.75, -73.99],
                "Outline": [{"Lat": 1e-320, "Lng": -74.0}],
            })
        client.put_item.assert_not_called()

    def test_update_item_subnormal_coordinate_is_write_error(self):
        client = MagicMock()
        with pytest.raises(WriteError, match="UpdateItem zip=10001"):
            DynamoRegionStore(client).update_item(10001, {"Center": [1e-320, 0.0]})
        client.update_item.assert_not_called()

    def test_update_item_sets_only_given_attributes(self):
        client = MagicMock()
        DynamoRegionStore(client).update_item(
            10001, {"Center": [40.75, -73.99], "Outline": []}
        )
        kwargs = client.update_item.call_args.kwargs
        assert kwargs["Key"] == {"Zip": {"N": "10001"}}
        assert kwargs["UpdateExpression"] == "SET #center = :center, #outline = :outline"
        assert kwargs["ExpressionAttributeNames"] == {
            "#center": "Center",
            "#outline": "Outline",
            "#pk": "Zip",
        }
        assert kwargs["ExpressionAttributeValues"] == {
            ":center": {"L": [{"N": "40.75"}, {"N": "-73.99"}]},
            ":outline": {"L": []},
        }
        assert kwargs["ConditionExpression"] == "attribute_exists(#pk)"

    def test_update_item_conditional_failure_is_write_error(self):
        client = MagicMock()
        client.update_item.side_effect = _client_error("ConditionalCheckFailedException", "UpdateItem")
        with pytest.raises(WriteError):
            DynamoRegionStore(client).update_item(10001, {"Center": [0.0, 0.0]})


class TestFromCredentials:
    @patch("geozip_etl.store.boto3.Session")
    def test_static_credentials(self, mock_session_cls):
        store = DynamoRegionStore.from_credentials("us-east-1", "AKIA", "secret")
        mock_session_cls.assert_called_once_with(
            aws_access_key_id="AKIA",
            aws_secret_access_key="secret",
            region_name="us-east-1",
        )
        mock_session_cls.return_value.client.assert_called_once_with("dynamodb")
        assert isinstance(store, DynamoRegionStore)

    @patch("geozip_etl.store.boto3.Session")
    def test_empty_credentials_use_default_chain(self, mock_session_cls):
        DynamoRegionStore.from_credentials("eu-west-1", "", None)
        mock_session_cls.assert_called_once_with(
            aws_access_key_id=None,
            aws_secret_access_key=None,
            region_name="eu-west-1",
        )
