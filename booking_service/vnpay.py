"""
VNPay adapter.

The payment URL is built locally: vnp_* params sorted by key, form-encoded,
signed with HMAC-SHA512 of the hash secret. QueryDR and refund go to the
merchant JSON API whose checksum is HMAC-SHA512 over pipe-joined fields.
"""
from __future__ import annotations

import datetime
import hashlib
import hmac
import logging
import urllib.parse
import uuid

import requests

from .config import Config
from .errors import GatewayError
from .gateway import (
    ALREADY_CONFIRMED, AMOUNT_MISMATCH, CONFIRMED, FAILED, GW_FAILED, GW_PROCESSING, GW_SUCCESS,
    NOT_FOUND, PaymentGateway,
)
from .ledger import PAID_STATUSES
from .utils import utc_now

logger = logging.getLogger(__name__)

VERSION = "2.1.0"
GMT7 = datetime.timedelta(hours=7)

# QueryDR vnp_TransactionStatus values
TXN_SUCCESS = "00"
TXN_PENDING = "01"
REFUND_PROCESSING = ("05", "06")
REFUND_REJECTED = "09"

TRANSACTION_TYPE_FULL_REFUND = "02"
TRANSACTION_TYPE_PARTIAL_REFUND = "03"
REFUND_TRANSACTION_TYPES = (TRANSACTION_TYPE_FULL_REFUND, TRANSACTION_TYPE_PARTIAL_REFUND)


def _sorted_query(params: dict[str, str]) -> str:
    # VNPay expects params sorted by key ascending, spaces encoded as '+'
    items = sorted((k, v) for k, v in params.items() if v is not None)
    return urllib.parse.urlencode(items, safe="", quote_via=urllib.parse.quote_plus)


def sign_hmac_sha512(data: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha512).hexdigest()


def vnpay_time(now: datetime.datetime) -> str:
    """Naive UTC -> yyyyMMddHHmmss in GMT+7"""
    return (now + GMT7).strftime("%Y%m%d%H%M%S")


def build_payment_params(
    *,
    tmn_code: str,
    txn_ref: str,
    amount_vnd: float,
    order_info: str,
    return_url: str,
    client_ip: str,
    now: datetime.datetime,
    ipn_url: str | None = None,
    locale: str = "vn",
    order_type: str = "other",
    expire_minutes: int = 15,
) -> dict[str, str]:
    amount_int = int(round(float(amount_vnd)))
    expire_at = now + datetime.timedelta(minutes=max(1, int(expire_minutes)))

    params: dict[str, str] = {
        "vnp_Version": VERSION,
        "vnp_Command": "pay",
        "vnp_TmnCode": tmn_code,
        "vnp_Amount": str(amount_int * 100),
        "vnp_CurrCode": "VND",
        "vnp_TxnRef": txn_ref,
        "vnp_OrderInfo": order_info,
        "vnp_OrderType": order_type,
        "vnp_Locale": locale,
        "vnp_ReturnUrl": return_url,
        "vnp_IpAddr": client_ip or "127.0.0.1",
        "vnp_CreateDate": vnpay_time(now),
        "vnp_ExpireDate": vnpay_time(expire_at),
    }
    if ipn_url:
        params["vnp_IpnUrl"] = ipn_url
    return params


def build_payment_url(base_url: str, params: dict[str, str], secret: str) -> str:
    # Hash data excludes vnp_SecureHash and vnp_SecureHashType
    secure_hash = sign_hmac_sha512(_sorted_query(params), secret)
    query_string_for_url = _sorted_query({**params, "vnp_SecureHashType": "HmacSHA512"})
    return f"{base_url}?{query_string_for_url}&vnp_SecureHash={secure_hash}"


def validate_return_or_ipn(params: dict[str, str], secret: str) -> bool:
    if not secret:
        return False

    secure_hash = params.get("vnp_SecureHash")
    if not secure_hash:
        return False

    filtered = {
        k: v for k, v in params.items()
        if k.startswith("vnp_") and k not in ("vnp_SecureHash", "vnp_SecureHashType")
    }
    expected = sign_hmac_sha512(_sorted_query(filtered), secret)
    return hmac.compare_digest(expected.lower(), secure_hash.lower())


def _pipe_hash(values: list[str], secret: str) -> str:
    return sign_hmac_sha512("|".join("" if v is None else str(v) for v in values), secret)


def build_querydr_payload(
    *,
    tmn_code: str,
    secret: str,
    txn_ref: str,
    order_info: str,
    transaction_date: str,
    client_ip: str,
    request_id: str,
    now: datetime.datetime,
) -> dict[str, str]:
    """`transaction_date` is the vnp_CreateDate sent with the payment URL."""
    params = {
        "vnp_RequestId": request_id,
        "vnp_Version": VERSION,
        "vnp_Command": "querydr",
        "vnp_TmnCode": tmn_code,
        "vnp_TxnRef": txn_ref,
        "vnp_OrderInfo": order_info,
        "vnp_TransactionDate": transaction_date,
        "vnp_CreateDate": vnpay_time(now),
        "vnp_IpAddr": client_ip or "127.0.0.1",
    }
    params["vnp_SecureHash"] = _pipe_hash([
        params["vnp_RequestId"], params["vnp_Version"], params["vnp_Command"], params["vnp_TmnCode"],
        params["vnp_TxnRef"], params["vnp_TransactionDate"], params["vnp_CreateDate"],
        params["vnp_IpAddr"], params["vnp_OrderInfo"],
    ], secret)
    return params


def build_refund_payload(
    *,
    tmn_code: str,
    secret: str,
    txn_ref: str,
    amount_vnd: int,
    full_refund: bool,
    transaction_no: str,
    transaction_date: str,
    create_by: str,
    order_info: str,
    client_ip: str,
    request_id: str,
    now: datetime.datetime,
) -> dict[str, str]:
    params = {
        "vnp_RequestId": request_id,
        "vnp_Version": VERSION,
        "vnp_Command": "refund",
        "vnp_TmnCode": tmn_code,
        "vnp_TransactionType": TRANSACTION_TYPE_FULL_REFUND if full_refund else TRANSACTION_TYPE_PARTIAL_REFUND,
        "vnp_TxnRef": txn_ref,
        "vnp_Amount": str(int(amount_vnd) * 100),
        "vnp_TransactionNo": transaction_no or "",
        "vnp_TransactionDate": transaction_date,
        "vnp_CreateBy": create_by,
        "vnp_CreateDate": vnpay_time(now),
        "vnp_IpAddr": client_ip or "127.0.0.1",
        "vnp_OrderInfo": order_info,
    }
    params["vnp_SecureHash"] = _pipe_hash([
        params["vnp_RequestId"], params["vnp_Version"], params["vnp_Command"], params["vnp_TmnCode"],
        params["vnp_TransactionType"], params["vnp_TxnRef"], params["vnp_Amount"],
        params["vnp_TransactionNo"], params["vnp_TransactionDate"], params["vnp_CreateBy"],
        params["vnp_CreateDate"], params["vnp_IpAddr"], params["vnp_OrderInfo"],
    ], secret)
    return params


def parse_vnpay_kv_response(text: str) -> dict[str, str]:
    """Parse VNPay response formats like: key=value&key2=value2."""
    parsed = urllib.parse.parse_qs(text, keep_blank_values=True)
    return {k: (v[0] if isinstance(v, list) and v else "") for k, v in parsed.items()}


def post_merchant_api(api_url: str, payload: dict[str, str], timeout: int) -> dict[str, str]:
    """POST to the merchant API and return the response as a flat str dict"""
    if not api_url:
        raise GatewayError("Missing VNPAY_API_URL")
    try:
        resp = requests.post(api_url, json=payload, timeout=timeout)
    except requests.RequestException as exc:
        raise GatewayError(f"VNPay request failed: {exc}")

    content_type = (resp.headers.get("Content-Type") or "").lower()
    if "application/json" in content_type:
        try:
            data = resp.json() or {}
        except ValueError:
            raise GatewayError(f"VNPay returned invalid JSON (HTTP {resp.status_code})")
        return {str(k): "" if v is None else str(v) for k, v in data.items()}
    return parse_vnpay_kv_response(resp.text or "")


class VNPayGateway(PaymentGateway):
    method = "vnpay"
    tag = "[VNPAY]"

    def __init__(self, db, ledger, notifier, job_scheduler=None, timeout=None):
        super().__init__(db, ledger, notifier, job_scheduler, timeout)
        self.tmn_code = Config.VNPAY_TMN_CODE
        self.secret = Config.VNPAY_HASH_SECRET
        self.pay_url = Config.VNPAY_URL
        self.api_url = Config.VNPAY_API_URL
        self.return_url = Config.VNPAY_RETURN_URL
        self.ipn_url = Config.VNPAY_IPN_URL or None

    def new_transaction_id(self, booking, now):
        millis = int((now - datetime.datetime(1970, 1, 1)).total_seconds() * 1000)
        return f"B{str(booking['_id'])[-8:]}_{millis}"

    @staticmethod
    def order_info(booking):
        return f"Thanh toan dat phong {booking['_id']}"

    def _create_order(self, booking, payment, client_ip, now):
        order_info = self.order_info(booking)
        params = build_payment_params(
            tmn_code=self.tmn_code,
            txn_ref=payment["transaction_id"],
            amount_vnd=payment["amount"],
            order_info=order_info,
            return_url=self.return_url,
            ipn_url=self.ipn_url,
            client_ip=client_ip,
            now=now,
        )
        return {
            "pay_url": build_payment_url(self.pay_url, params, self.secret),
            "order_info": order_info,
            "vnp_create_date": params["vnp_CreateDate"],
            "client_ip": client_ip,
        }

    # ---------------------------
    # Inbound: IPN and browser return
    # ---------------------------

    def handle_callback(self, params, now=None):
        """IPN. Returns the {RspCode, Message} body VNPay expects."""
        try:
            if not validate_return_or_ipn(params, self.secret):
                logger.warning("[VNPAY] IPN with invalid signature: %s", params.get("vnp_TxnRef"))
                return {"RspCode": "97", "Message": "Invalid Signature"}

            txn_ref = params.get("vnp_TxnRef")
            payment = self.ledger.find_by_transaction(txn_ref)
            if payment is None or payment.get("payment_method") != self.method:
                return {"RspCode": "01", "Message": "Order not found"}
            if payment.get("status") in PAID_STATUSES:
                self.ledger.patch_missing_gateway_txn(txn_ref, params.get("vnp_TransactionNo"), now)
                return {"RspCode": "02", "Message": "Order already confirmed"}

            outcome = self._apply_params(params, now)
            if outcome == AMOUNT_MISMATCH:
                return {"RspCode": "04", "Message": "Invalid amount"}
            if outcome == NOT_FOUND:
                return {"RspCode": "01", "Message": "Order not found"}
            if outcome in (CONFIRMED, FAILED):
                return {"RspCode": "00", "Message": "Confirm Success"}
            return {"RspCode": "02", "Message": "Order already confirmed"}
        except Exception:
            logger.exception("[VNPAY] IPN processing crashed")
            return {"RspCode": "99", "Message": "Unknown error"}

    def handle_redirect(self, params, now=None):
        """Browser return. Always yields a URL to redirect to."""
        result_url = f"{Config.CLIENT_URL}/payment-result"
        try:
            if not validate_return_or_ipn(params, self.secret):
                return f"{result_url}?status=failed&message=Invalid%20signature"

            txn_ref = params.get("vnp_TxnRef")
            payment = self.ledger.find_by_transaction(txn_ref)
            if payment is None:
                return f"{result_url}?status=failed&message=Payment%20not%20found"

            outcome = self._apply_params(params, now)
            if outcome in (CONFIRMED, ALREADY_CONFIRMED):
                return f"{result_url}?status=success&bookingId={urllib.parse.quote(str(payment['booking_id']))}"
            code = urllib.parse.quote(params.get("vnp_ResponseCode") or outcome)
            return f"{result_url}?status=failed&code={code}"
        except Exception:
            logger.exception("[VNPAY] Return processing crashed")
            return f"{result_url}?status=error&message=Server%20error"

    def _apply_params(self, params, now):
        try:
            amount = int(params.get("vnp_Amount", "0")) // 100
        except (TypeError, ValueError):
            amount = 0
        response_code = params.get("vnp_ResponseCode") or ""
        txn_status = params.get("vnp_TransactionStatus")
        success = response_code == "00" and txn_status in (None, "", TXN_SUCCESS)
        raw = {k: v for k, v in params.items() if k != "vnp_SecureHash"}
        return self.apply_result(
            params.get("vnp_TxnRef"), success, params.get("vnp_TransactionNo"), amount, raw, now,
        )

    # ---------------------------
    # Outbound: QueryDR and refund
    # ---------------------------

    def _query_payment(self, payment):
        payload = build_querydr_payload(
            tmn_code=self.tmn_code,
            secret=self.secret,
            txn_ref=payment["transaction_id"],
            order_info=payment.get("order_info") or f"Query {payment['transaction_id']}",
            transaction_date=payment.get("vnp_create_date") or vnpay_time(payment["created_at"]),
            client_ip=payment.get("client_ip") or "127.0.0.1",
            request_id=uuid.uuid4().hex[:32],
            now=utc_now(),
        )
        data = post_merchant_api(self.api_url, payload, self.timeout)
        rsp_code = data.get("vnp_ResponseCode") or ""
        txn_status = data.get("vnp_TransactionStatus") or ""
        try:
            amount = int(data.get("vnp_Amount") or 0) // 100
        except ValueError:
            amount = None

        if rsp_code == "00" and txn_status == TXN_SUCCESS:
            status = GW_SUCCESS
        elif rsp_code == "00" and txn_status == TXN_PENDING:
            status = GW_PROCESSING
        elif rsp_code == "00" or rsp_code == "91":
            # 91: transaction never reached VNPay
            status = GW_FAILED
        else:
            raise GatewayError(f"VNPay QueryDR error {rsp_code}: {data.get('vnp_Message', '')}")
        return {
            "status": status,
            "gateway_txn_id": data.get("vnp_TransactionNo") or None,
            "amount": amount or None,
            "raw": data,
        }

    def _request_refund(self, payment, amount, now):
        transaction_no = payment.get("gateway_txn_id")
        if not transaction_no:
            # not cached locally; ask VNPay for it
            transaction_no = self._query_payment(payment).get("gateway_txn_id")
            if transaction_no:
                self.ledger.patch_missing_gateway_txn(payment["transaction_id"], transaction_no, now)

        refund_request_id = uuid.uuid4().hex[:32]
        payload = build_refund_payload(
            tmn_code=self.tmn_code,
            secret=self.secret,
            txn_ref=payment["transaction_id"],
            amount_vnd=amount,
            full_refund=int(amount) >= int(payment.get("amount") or 0),
            transaction_no=transaction_no,
            transaction_date=payment.get("vnp_create_date") or vnpay_time(payment["created_at"]),
            create_by=str(payment.get("user_id") or "system"),
            order_info=f"Hoan tien dat phong {payment['booking_id']}",
            client_ip=payment.get("client_ip") or "127.0.0.1",
            request_id=refund_request_id,
            now=now,
        )
        data = post_merchant_api(self.api_url, payload, self.timeout)
        outcome = self._refund_outcome(data)
        outcome["refund_transaction_id"] = refund_request_id
        return outcome

    def _query_refund(self, payment):
        data = self._query_payment(payment)["raw"]
        if data.get("vnp_TransactionType") not in REFUND_TRANSACTION_TYPES and \
                data.get("vnp_TransactionStatus") not in REFUND_PROCESSING + (REFUND_REJECTED,):
            # QueryDR still reports the original charge: nothing settled yet
            return {"status": GW_PROCESSING, "raw": data}
        return self._refund_outcome(data)

    @staticmethod
    def _refund_outcome(data):
        rsp_code = data.get("vnp_ResponseCode") or ""
        txn_status = data.get("vnp_TransactionStatus") or ""
        outcome = {
            "gateway_refund_id": data.get("vnp_TransactionNo") or None,
            "raw": dict(data),
            "reason": None,
        }
        if rsp_code != "00":
            outcome.update(status=GW_FAILED, reason=f"{rsp_code} {data.get('vnp_Message', '')}".strip())
        elif txn_status in REFUND_PROCESSING:
            outcome["status"] = GW_PROCESSING
        elif txn_status == REFUND_REJECTED:
            outcome.update(status=GW_FAILED, reason="Refund rejected by VNPay")
        else:
            outcome["status"] = GW_SUCCESS
        return outcome
