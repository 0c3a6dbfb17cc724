"""回调签名模块单元测试。"""

import hashlib
import hmac
import re

from settlement.services.sign import callback_key, generate_sign, verify_sign


class TestGenerateSign:
    """generate_sign 单元测试。"""

    def test_basic_sign(self):
        sign = generate_sign({"order_ref": "EPZ2401010001ABCD", "payment_status": "paid"}, "k")
        # 小写 64 位十六进制
        assert re.fullmatch(r"[0-9a-f]{64}", sign)

    def test_ascii_sort_order(self):
        """参数按 ASCII 排序，不同顺序输入产生相同签名。"""
        params_a = {"z": "1", "a": "2", "m": "3"}
        params_b = {"a": "2", "m": "3", "z": "1"}
        assert generate_sign(params_a, "key") == generate_sign(params_b, "key")

    def test_filters_empty_values_and_sign(self):
        base = {"a": "1", "b": "2"}
        noisy = {"a": "1", "b": "2", "c": "", "d": None, "sign": "abc"}
        assert generate_sign(base, "k") == generate_sign(noisy, "k")

    def test_known_value(self):
        expected = hmac.new(b"KEY", b"a=1&b=2&c=3", hashlib.sha256).hexdigest()
        assert generate_sign({"c": "3", "a": "1", "b": "2"}, "KEY") == expected


class TestVerifySign:
    """verify_sign 单元测试。"""

    def test_valid_sign(self):
        params = {"order_ref": "42", "payment_status": "paid"}
        assert verify_sign(params, "secret", generate_sign(params, "secret")) is True

    def test_wrong_key_fails(self):
        params = {"a": "1"}
        assert verify_sign(params, "wrong", generate_sign(params, "right")) is False

    def test_tampered_params_fail(self):
        sign = generate_sign({"order_ref": "42", "payment_status": "failed"}, "k")
        assert verify_sign({"order_ref": "42", "payment_status": "paid"}, "k", sign) is False

    def test_empty_key_always_rejected(self):
        params = {"a": "1"}
        assert verify_sign(params, "", generate_sign(params, "")) is False

    def test_empty_sign_rejected(self):
        assert verify_sign({"a": "1"}, "k", "") is False

    def test_callback_key_from_env(self, monkeypatch):
        monkeypatch.setenv("CALLBACK_KEY", "from-env")
        assert callback_key() == "from-env"
        monkeypatch.delenv("CALLBACK_KEY")
        assert callback_key() == ""
