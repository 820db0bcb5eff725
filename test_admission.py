# test_admission.py
import pytest

from admission import (
    UNKNOWN_ADDRESS,
    AdmissionFailure,
    AllowList,
    failure_body,
    is_loopback,
    resolve_client_ip,
)
from config import parse_allow_list


def _allow(csv: str, trust_loopback: bool = True) -> AllowList:
    return AllowList(parse_allow_list(csv), trust_loopback=trust_loopback)


# ---------------------------------------------------------------------------
# resolve_client_ip
# ---------------------------------------------------------------------------

class TestResolveClientIp:
    def test_cf_connecting_ip_wins(self):
        headers = {
            "cf-connecting-ip": "198.51.100.1",
            "x-forwarded-for": "203.0.113.9",
            "x-real-ip": "203.0.113.10",
        }
        assert resolve_client_ip(headers, "127.0.0.1") == "198.51.100.1"

    def test_peer_before_forwarded_for(self):
        headers = {"x-forwarded-for": "203.0.113.9"}
        assert resolve_client_ip(headers, "10.0.0.5") == "10.0.0.5"

    def test_first_forwarded_for_hop(self):
        headers = {"x-forwarded-for": " 203.0.113.9 , 10.0.0.1, 10.0.0.2"}
        assert resolve_client_ip(headers, None) == "203.0.113.9"

    def test_real_ip_last_header(self):
        assert resolve_client_ip({"x-real-ip": "203.0.113.10"}, None) == "203.0.113.10"

    def test_empty_values_skipped(self):
        headers = {"cf-connecting-ip": "  ", "x-forwarded-for": "", "x-real-ip": "203.0.113.10"}
        assert resolve_client_ip(headers, "") == "203.0.113.10"

    def test_nothing_resolves_to_unknown(self):
        assert resolve_client_ip({}, None) == UNKNOWN_ADDRESS


# ---------------------------------------------------------------------------
# is_loopback
# ---------------------------------------------------------------------------

class TestIsLoopback:
    @pytest.mark.parametrize("address", ["127.0.0.1", "127.1.2.3", "::1", "::ffff:127.0.0.1"])
    def test_loopback(self, address):
        assert is_loopback(address) is True

    @pytest.mark.parametrize("address", ["10.0.0.1", "::ffff:10.0.0.1", "localhost", UNKNOWN_ADDRESS, ""])
    def test_not_loopback(self, address):
        assert is_loopback(address) is False


# ---------------------------------------------------------------------------
# AllowList.admit
# ---------------------------------------------------------------------------

class TestEmptyAllowList:
    @pytest.mark.parametrize("address", ["203.0.113.9", "127.0.0.1", UNKNOWN_ADDRESS, "garbage"])
    def test_everyone_admitted(self, address):
        assert _allow("").admit(address) is None

    def test_falsy(self):
        assert not _allow("")


class TestCidr:
    def test_inside_block_admitted(self):
        assert _allow("10.0.0.0/8").admit("10.1.2.3") is None

    def test_outside_block_rejected(self):
        assert _allow("10.0.0.0/8").admit("11.1.2.3") is AdmissionFailure.NOT_ALLOWED

    def test_non_aligned_network_is_masked(self):
        assert _allow("192.168.1.77/24").admit("192.168.1.200") is None

    def test_slash_32(self):
        allow = _allow("203.0.113.7/32")
        assert allow.admit("203.0.113.7") is None
        assert allow.admit("203.0.113.8") is AdmissionFailure.NOT_ALLOWED

    def test_any_entry_matches(self):
        allow = _allow("203.0.113.7, 10.0.0.0/8")
        assert allow.admit("10.200.0.1") is None
        assert allow.admit("203.0.113.7") is None

    def test_ipv4_mapped_peer(self):
        assert _allow("10.0.0.0/8").admit("::ffff:10.1.2.3") is None

    def test_ipv6_entry(self):
        allow = _allow("2001:db8::/32")
        assert allow.admit("2001:db8::1") is None
        assert allow.admit("10.1.2.3") is AdmissionFailure.NOT_ALLOWED


class TestPlainAddress:
    def test_exact_match(self):
        assert _allow("192.168.1.5").admit("192.168.1.5") is None

    def test_textual_prefix_does_not_match(self):
        assert _allow("192.168.1.5").admit("192.168.1.50") is AdmissionFailure.NOT_ALLOWED

    def test_hostname_never_matches(self):
        assert _allow("192.168.1.5").admit("example.com") is AdmissionFailure.NOT_ALLOWED


class TestUnknownAddress:
    def test_unknown_rejected_when_list_configured(self):
        assert _allow("10.0.0.0/8").admit(UNKNOWN_ADDRESS) is AdmissionFailure.NO_ADDRESS

    def test_empty_rejected_when_list_configured(self):
        assert _allow("10.0.0.0/8").admit("") is AdmissionFailure.NO_ADDRESS


class TestLoopbackBypass:
    @pytest.mark.parametrize("address", ["127.0.0.1", "127.9.9.9", "::1"])
    def test_loopback_admitted_regardless_of_list(self, address):
        assert _allow("203.0.113.7").admit(address) is None

    def test_bypass_disabled(self):
        allow = _allow("203.0.113.7", trust_loopback=False)
        assert allow.admit("127.0.0.1") is AdmissionFailure.NOT_ALLOWED

    def test_loopback_entry_still_works_without_bypass(self):
        allow = _allow("127.0.0.0/8", trust_loopback=False)
        assert allow.admit("127.0.0.1") is None


# ---------------------------------------------------------------------------
# failure_body
# ---------------------------------------------------------------------------

class TestFailureBody:
    def test_no_address(self):
        assert failure_body(AdmissionFailure.NO_ADDRESS) == {"error": "Unable to determine client IP"}

    def test_not_allowed(self):
        assert failure_body(AdmissionFailure.NOT_ALLOWED) == {"error": "IP address not allowed"}
