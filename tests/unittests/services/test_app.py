from unittest import mock

import pytest
from werkzeug.exceptions import BadRequest

from chain_forge.services.common.factories import serve
from chain_forge.services.nodes.schemas import FundRequest

dummy_app = object()


def test_status_endpoint(api_client):
    assert api_client.get("/status").status_code == 200


@mock.patch(
    "chain_forge.services.common.blueprints.metrics.generate_latest",
    return_value=b"metrics_generated",
)
def test_metrics_endpoint(_, api_client):
    response = api_client.get("/metrics")

    assert response.status_code == 200
    assert response.data == b"metrics_generated"


def test_requests_are_counted_in_metrics(api_client):
    api_client.get("/api/v1/nodes")

    metrics = api_client.get("/metrics").data.decode()
    assert 'http_requests_total{method="GET",path="/api/v1/nodes"}' in metrics


def test_app_config_points_at_data_root(api_app, data_root):
    assert api_app.config["DATA_ROOT"] == data_root
    assert api_app.config["REGISTRY"].path == data_root.joinpath("registry.json")


@mock.patch("chain_forge.services.common.factories.construct_flask_app", return_value=dummy_app)
@mock.patch("chain_forge.services.common.factories.waitress.serve")
def test_serve_calls_waitress_with_args(mock_serve, mock_construct, tmp_path):
    serve("127.0.0.1", 3001, tmp_path)

    mock_construct.assert_called_once_with(tmp_path)
    mock_serve.assert_called_once_with(dummy_app, host="127.0.0.1", port=3001)


@pytest.mark.parametrize(
    "input_dict, failure_expected",
    argvalues=[
        ({"address": "addr", "amount": 1.5}, False),
        ({"address": "addr", "amount": 0}, False),
        ({"address": "addr"}, True),
        ({"amount": 1.0}, True),
        ({"address": "addr", "amount": "lots"}, True),
    ],
    ids=[
        "Valid request passes",
        "Zero amount passes",
        "Missing amount fails",
        "Missing address fails",
        "Non-numeric amount fails",
    ],
)
def test_fund_request_validate_and_deserialize(input_dict, failure_expected, api_app):
    schema = FundRequest()
    with api_app.test_request_context():
        if failure_expected:
            with pytest.raises(BadRequest):
                schema.validate_and_deserialize(input_dict)
        else:
            assert schema.validate_and_deserialize(input_dict) == input_dict
