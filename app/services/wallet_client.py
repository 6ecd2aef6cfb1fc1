"""
Grin 钱包 / 节点 API 客户端：HTTP Basic 认证调用钱包 v1 接口。

主要功能：
- issue_send_tx: 向目标地址发起付款（提现 / 退款）
- foreign/receive_tx: 接收买家 slate（收款）
- retrieve_txs / retrieve_outputs: 查询交易状态、手续费、出块高度
- cancel_tx: 取消未上链的交易
- 节点 /v1/chain: 查询当前区块高度
- 节点 /v1/chain/kernels: 没有本方输出的出账交易按内核查出块高度
"""

import json
import logging
import os

import httpx
from dotenv import load_dotenv

from app.services.errors import WalletUnavailable

load_dotenv()

logger = logging.getLogger(__name__)

WALLET_URL = os.getenv("WALLET_URL", "http://127.0.0.1:3420")
WALLET_USER = os.getenv("WALLET_USER", "grin")
WALLET_PASSWORD = os.getenv("WALLET_PASSWORD", "")
NODE_URL = os.getenv("NODE_URL", "http://127.0.0.1:3413")
NODE_USER = os.getenv("NODE_USER", "grin")
NODE_PASSWORD = os.getenv("NODE_PASSWORD", "")

RETRIEVE_TXS_PATH = "/v1/wallet/owner/retrieve_txs"
RETRIEVE_OUTPUTS_PATH = "/v1/wallet/owner/retrieve_outputs"
RECEIVE_PATH = "/v1/wallet/foreign/receive_tx"
SEND_PATH = "/v1/wallet/owner/issue_send_tx"
CANCEL_TX_PATH = "/v1/wallet/owner/cancel_tx"
CHAIN_PATH = "/v1/chain"
KERNELS_PATH = "/v1/chain/kernels/"

CANCELLED_TX_TYPES = ("TxSentCancelled", "TxReceivedCancelled")


def _commit_hex(commit) -> str | None:
    """slate 中的承诺是字节数组，钱包输出中是十六进制字符串，统一为十六进制。"""
    if commit is None:
        return None
    if isinstance(commit, str):
        return commit.lower()
    return bytes(commit).hex()


def _slate_outputs(slate: dict) -> list[str]:
    body = (slate.get("tx") or {}).get("body") or {}
    return [_commit_hex(o.get("commit")) for o in body.get("outputs") or []]


def _slate_messages(slate: dict) -> list[str]:
    return [
        p["message"]
        for p in slate.get("participant_data") or []
        if p.get("message")
    ]


class WalletClient:
    """钱包 owner / foreign API 与节点 API 的同步客户端。"""

    def __init__(
        self,
        wallet_url: str = WALLET_URL,
        user: str = WALLET_USER,
        password: str = WALLET_PASSWORD,
        node_url: str = NODE_URL,
        node_user: str = NODE_USER,
        node_password: str = NODE_PASSWORD,
    ):
        self.wallet_url = wallet_url.rstrip("/")
        self.node_url = node_url.rstrip("/")
        self._wallet_auth = (user, password)
        self._node_auth = (node_user, node_password)

    def _request(
        self,
        method: str,
        url: str,
        auth: tuple,
        params: dict | None = None,
        payload: dict | None = None,
        expect_json: bool = True,
    ):
        """
        发送请求并解析 JSON 响应。

        Raises:
            WalletUnavailable: 网络错误、非 2xx 状态或响应无法解析。
        """
        logger.debug("钱包请求: %s %s", method, url)
        try:
            with httpx.Client(timeout=10.0, auth=auth) as client:
                response = client.request(method, url, params=params, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise WalletUnavailable(f"请求钱包接口失败 ({url}): {e}")

        if not expect_json:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise WalletUnavailable(f"解析钱包响应失败 ({url}): {e}")

    # ── 出账 ──────────────────────────────────────────────

    def send_slate(self, destination: str, amount: int, message: str = "") -> str:
        """
        向 destination 发起付款，钱包负责交换 slate、定稿并广播。

        Returns:
            钱包生成的 slate_id。
        """
        payload = {
            "amount": int(amount),
            "minimum_confirmations": 10,
            "method": "http",
            "dest": destination,
            "max_outputs": 10,
            "num_change_outputs": 1,
            "selection_strategy_is_use_all": False,
            "message": message or None,
        }
        slate = self._request("POST", self.wallet_url + SEND_PATH, self._wallet_auth, payload=payload)
        slate_id = (slate or {}).get("id")
        if not slate_id:
            raise WalletUnavailable("钱包响应缺少 slate id")
        logger.info("钱包已发起付款: slate_id=%s, amount=%d, dest=%s", slate_id, amount, destination)
        return slate_id

    def cancel_tx(self, slate_id: str) -> None:
        self._request(
            "POST", self.wallet_url + CANCEL_TX_PATH, self._wallet_auth,
            params={"tx_id": slate_id}, expect_json=False,
        )
        logger.info("钱包交易已取消: slate_id=%s", slate_id)

    # ── 收款 ──────────────────────────────────────────────

    def receive_slate(self, slate: dict) -> dict:
        """
        将买家 slate 交给钱包签收。

        Returns:
            dict: {
                "slate_id": str,
                "amount": int,
                "fee": int,
                "commitment": str | None,  # 本方新增输出的承诺
                "messages": list[str],
                "num_inputs": int,
                "num_outputs": int,
                "slate": dict,  # 钱包返回的 slate，原样交还买家
            }
        """
        response = self._request("POST", self.wallet_url + RECEIVE_PATH, self._wallet_auth, payload=slate)
        if not isinstance(response, dict) or not response.get("id"):
            raise WalletUnavailable("钱包响应缺少 slate id")

        before = set(_slate_outputs(slate))
        new_outputs = [c for c in _slate_outputs(response) if c not in before]
        body = (response.get("tx") or {}).get("body") or {}

        return {
            "slate_id": response["id"],
            "amount": int(response.get("amount") or 0),
            "fee": int(response.get("fee") or 0),
            "commitment": new_outputs[0] if new_outputs else None,
            "messages": _slate_messages(response),
            "num_inputs": len(body.get("inputs") or []),
            "num_outputs": len(body.get("outputs") or []),
            "slate": response,
        }

    # ── 查询 ──────────────────────────────────────────────

    def get_transaction(self, slate_id: str) -> dict:
        """
        查询钱包中的交易记录，并通过本方输出取得出块高度。

        Returns:
            dict: {
                "height": int | None,
                "commitment": str | None,
                "confirmed": bool,
                "cancelled": bool,
                "fee": int | None,
                "num_inputs": int,
                "num_outputs": int,
            }

        Raises:
            WalletUnavailable: 请求失败，或钱包中找不到唯一的该交易。
        """
        data = self._request(
            "GET", self.wallet_url + RETRIEVE_TXS_PATH, self._wallet_auth,
            params={"tx_id": slate_id, "refresh": ""},
        )
        # 钱包返回 [refreshed, txs] 或 {"updated": ..., "txs": [...]}
        txs = data.get("txs") if isinstance(data, dict) else data[1]
        if len(txs) != 1:
            raise WalletUnavailable(
                f"钱包中 slate_id={slate_id} 的交易数量为 {len(txs)}"
            )
        entry = txs[0]

        height = commitment = None
        if entry.get("confirmed"):
            height, commitment = self._output_position(entry.get("id"))
            if height is None and entry.get("kernel_excess"):
                height = self._kernel_height(
                    entry["kernel_excess"], entry.get("kernel_lookup_min_height"),
                )

        return {
            "height": height,
            "commitment": commitment,
            "confirmed": bool(entry.get("confirmed")),
            "cancelled": entry.get("tx_type") in CANCELLED_TX_TYPES,
            "fee": entry.get("fee"),
            "num_inputs": int(entry.get("num_inputs") or 0),
            "num_outputs": int(entry.get("num_outputs") or 0),
        }

    def _output_position(self, local_tx_id) -> tuple[int | None, str | None]:
        """返回交易中本方输出的 (height, commitment)，没有输出时为 (None, None)。"""
        if local_tx_id is None:
            return None, None
        data = self._request(
            "GET", self.wallet_url + RETRIEVE_OUTPUTS_PATH, self._wallet_auth,
            params={"tx_id": local_tx_id, "refresh": ""},
        )
        outputs = data.get("outputs") if isinstance(data, dict) else data[1]
        for item in outputs or []:
            output = item[0] if isinstance(item, list) else item
            if output.get("height"):
                return int(output["height"]), _commit_hex(output.get("commit"))
        return None, None

    def _kernel_height(self, excess: str, min_height=None) -> int | None:
        """在节点上按内核 excess 查出块高度，查不到返回 None。"""
        params = {"min_height": int(min_height)} if min_height else None
        try:
            data = self._request(
                "GET", self.node_url + KERNELS_PATH + excess, self._node_auth,
                params=params,
            )
        except WalletUnavailable as e:
            logger.warning("按内核查询高度失败 (excess=%s): %s", excess, e)
            return None
        height = (data or {}).get("height")
        return int(height) if height else None

    def get_chain_height(self) -> int:
        data = self._request("GET", self.node_url + CHAIN_PATH, self._node_auth)
        try:
            return int(data["height"])
        except (KeyError, TypeError, ValueError) as e:
            raise WalletUnavailable(f"节点响应缺少高度: {e}")
