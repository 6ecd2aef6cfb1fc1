"""钱包 / 节点客户端单元测试（mock httpx）。"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.services.errors import WalletUnavailable
from app.services.wallet_client import (
    CANCEL_TX_PATH,
    CHAIN_PATH,
    KERNELS_PATH,
    RECEIVE_PATH,
    RETRIEVE_OUTPUTS_PATH,
    RETRIEVE_TXS_PATH,
    SEND_PATH,
    WalletClient,
)

WALLET = "http://wallet.local:3420"
NODE = "http://node.local:3413"


@pytest.fixture
def client():
    return WalletClient(
        wallet_url=WALLET + "/", user="grin", password="owner-secret",
        node_url=NODE, node_user="grin", node_password="node-secret",
    )


def _response(payload=None, status_code=200, json_error=False):
    resp = MagicMock()
    resp.status_code = status_code
    if json_error:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            "error", request=MagicMock(), response=resp,
        )
    return resp


def _mock_client(mock_client_cls, *responses):
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    mock_client.request.side_effect = list(responses)
    mock_client_cls.return_value = mock_client
    return mock_client


# ── 出账 ──────────────────────────────────────────────────


class TestSend:

    @patch("app.services.wallet_client.httpx.Client")
    def test_send_slate(self, mock_client_cls, client):
        mock_client = _mock_client(mock_client_cls, _response({"id": "slate-9", "amount": 500}))

        assert client.send_slate("http://dest", 500, "payout o1") == "slate-9"

        method, url = mock_client.request.call_args[0]
        payload = mock_client.request.call_args.kwargs["json"]
        assert method == "POST"
        assert url == WALLET + SEND_PATH
        assert payload["dest"] == "http://dest"
        assert payload["amount"] == 500
        assert payload["method"] == "http"
        assert payload["message"] == "payout o1"
        assert mock_client_cls.call_args.kwargs["auth"] == ("grin", "owner-secret")

    @patch("app.services.wallet_client.httpx.Client")
    def test_send_without_id(self, mock_client_cls, client):
        _mock_client(mock_client_cls, _response({}))
        with pytest.raises(WalletUnavailable):
            client.send_slate("http://dest", 500)

    @patch("app.services.wallet_client.httpx.Client")
    def test_http_error(self, mock_client_cls, client):
        _mock_client(mock_client_cls, _response(status_code=500))
        with pytest.raises(WalletUnavailable):
            client.send_slate("http://dest", 500)

    @patch("app.services.wallet_client.httpx.Client")
    def test_connect_error(self, mock_client_cls, client):
        mock_client = _mock_client(mock_client_cls)
        mock_client.request.side_effect = httpx.ConnectError("refused")
        with pytest.raises(WalletUnavailable):
            client.send_slate("http://dest", 500)

    @patch("app.services.wallet_client.httpx.Client")
    def test_cancel_tx(self, mock_client_cls, client):
        mock_client = _mock_client(mock_client_cls, _response(json_error=True))
        client.cancel_tx("slate-9")
        method, url = mock_client.request.call_args[0]
        assert url == WALLET + CANCEL_TX_PATH
        assert mock_client.request.call_args.kwargs["params"] == {"tx_id": "slate-9"}


# ── 收款 ──────────────────────────────────────────────────


class TestReceive:

    @patch("app.services.wallet_client.httpx.Client")
    def test_receive_slate_extracts_new_output(self, mock_client_cls, client):
        buyer_slate = {
            "id": "slate-1",
            "amount": 2_000_000_000,
            "tx": {"body": {"inputs": [{}], "outputs": [{"commit": [8, 170]}]}},
            "participant_data": [{"message": None}],
        }
        signed = {
            "id": "slate-1",
            "amount": 2_000_000_000,
            "fee": 7_000_000,
            "tx": {"body": {
                "inputs": [{}],
                "outputs": [{"commit": [8, 170]}, {"commit": [9, 187]}],
            }},
            "participant_data": [{"message": None}, {"message": "order E-1"}],
        }
        mock_client = _mock_client(mock_client_cls, _response(signed))

        received = client.receive_slate(buyer_slate)

        assert mock_client.request.call_args[0][1] == WALLET + RECEIVE_PATH
        assert received["slate_id"] == "slate-1"
        assert received["amount"] == 2_000_000_000
        assert received["fee"] == 7_000_000
        assert received["commitment"] == "09bb"
        assert received["messages"] == ["order E-1"]
        assert received["num_inputs"] == 1
        assert received["num_outputs"] == 2
        assert received["slate"] is signed

    @patch("app.services.wallet_client.httpx.Client")
    def test_invalid_json(self, mock_client_cls, client):
        _mock_client(mock_client_cls, _response(json_error=True))
        with pytest.raises(WalletUnavailable):
            client.receive_slate({"id": "slate-1"})


# ── 查询 ──────────────────────────────────────────────────


class TestQuery:

    @patch("app.services.wallet_client.httpx.Client")
    def test_confirmed_transaction_has_height(self, mock_client_cls, client):
        txs = [True, [{
            "id": 7, "tx_type": "TxReceived", "confirmed": True,
            "fee": 7_000_000, "num_inputs": 1, "num_outputs": 2,
        }]]
        outputs = [True, [[{"height": 0, "commit": "08AA"}, None],
                          [{"height": 1234, "commit": "09BB"}, None]]]
        mock_client = _mock_client(mock_client_cls, _response(txs), _response(outputs))

        info = client.get_transaction("slate-1")

        assert info == {
            "height": 1234,
            "commitment": "09bb",
            "confirmed": True,
            "cancelled": False,
            "fee": 7_000_000,
            "num_inputs": 1,
            "num_outputs": 2,
        }
        first, second = mock_client.request.call_args_list
        assert first[0][1] == WALLET + RETRIEVE_TXS_PATH
        assert first.kwargs["params"]["tx_id"] == "slate-1"
        assert second[0][1] == WALLET + RETRIEVE_OUTPUTS_PATH
        assert second.kwargs["params"]["tx_id"] == 7

    @patch("app.services.wallet_client.httpx.Client")
    def test_confirmed_without_own_output_uses_kernel(self, mock_client_cls, client):
        txs = [True, [{
            "id": 8, "tx_type": "TxSent", "confirmed": True, "fee": 6_000_000,
            "kernel_excess": "08cc", "kernel_lookup_min_height": 1200,
        }]]
        outputs = [True, []]
        kernel = {"tx_kernel": {"excess": "08cc"}, "height": 1250, "mmr_index": 3}
        mock_client = _mock_client(
            mock_client_cls, _response(txs), _response(outputs), _response(kernel),
        )

        info = client.get_transaction("out-1")

        assert info["height"] == 1250
        assert info["commitment"] is None
        assert info["confirmed"] is True
        third = mock_client.request.call_args_list[2]
        assert third[0][1] == NODE + KERNELS_PATH + "08cc"
        assert third.kwargs["params"] == {"min_height": 1200}
        assert mock_client_cls.call_args_list[2].kwargs["auth"] == ("grin", "node-secret")

    @patch("app.services.wallet_client.httpx.Client")
    def test_kernel_not_found_leaves_height_empty(self, mock_client_cls, client):
        txs = [True, [{"id": 8, "tx_type": "TxSent", "confirmed": True, "kernel_excess": "08cc"}]]
        _mock_client(
            mock_client_cls, _response(txs), _response([True, []]),
            _response(status_code=404),
        )

        info = client.get_transaction("out-1")

        assert info["height"] is None
        assert info["confirmed"] is True

    @patch("app.services.wallet_client.httpx.Client")
    def test_unconfirmed_skips_outputs(self, mock_client_cls, client):
        txs = {"txs": [{"id": 7, "tx_type": "TxSent", "confirmed": False}]}
        mock_client = _mock_client(mock_client_cls, _response(txs))

        info = client.get_transaction("slate-1")

        assert info["height"] is None
        assert info["cancelled"] is False
        assert mock_client.request.call_count == 1

    @patch("app.services.wallet_client.httpx.Client")
    def test_cancelled(self, mock_client_cls, client):
        txs = [False, [{"id": 7, "tx_type": "TxSentCancelled", "confirmed": False}]]
        _mock_client(mock_client_cls, _response(txs))
        assert client.get_transaction("slate-1")["cancelled"] is True

    @pytest.mark.parametrize("txs", [[True, []], [True, [{"id": 1}, {"id": 2}]]])
    @patch("app.services.wallet_client.httpx.Client")
    def test_not_exactly_one_transaction(self, mock_client_cls, client, txs):
        _mock_client(mock_client_cls, _response(txs))
        with pytest.raises(WalletUnavailable):
            client.get_transaction("slate-1")

    @patch("app.services.wallet_client.httpx.Client")
    def test_chain_height(self, mock_client_cls, client):
        mock_client = _mock_client(mock_client_cls, _response({"height": 523000}))

        assert client.get_chain_height() == 523000
        assert mock_client.request.call_args[0] == ("GET", NODE + CHAIN_PATH)
        assert mock_client_cls.call_args.kwargs["auth"] == ("grin", "node-secret")

    @patch("app.services.wallet_client.httpx.Client")
    def test_chain_height_missing(self, mock_client_cls, client):
        _mock_client(mock_client_cls, _response({"tip": {}}))
        with pytest.raises(WalletUnavailable):
            client.get_chain_height()
