"""Geolocation provider chain, caching and private-address handling."""

import httpx
import pytest

from boxoffice.service.geolocation import GeolocationResolver, is_private_ip, normalize_ip


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestAddressHelpers:
    @pytest.mark.parametrize(
        "ip", ["127.0.0.1", "10.1.2.3", "192.168.0.10", "172.16.5.4", "::1", "fe80::1", "", "localhost", "nonsense"]
    )
    def test_private_or_invalid(self, ip):
        assert is_private_ip(ip)

    @pytest.mark.parametrize("ip", ["8.8.8.8", "1.1.1.1", "2001:4860:4860::8888"])
    def test_public(self, ip):
        assert not is_private_ip(ip)

    def test_strips_ipv4_mapped_prefix(self):
        assert normalize_ip("::ffff:8.8.8.8") == "8.8.8.8"
        assert normalize_ip(" 8.8.8.8 ") == "8.8.8.8"


class TestGeolocationResolver:
    async def test_private_address_never_hits_network(self):
        def handler(request):
            raise AssertionError("network should not be used")

        resolver = GeolocationResolver(client=_client(handler))
        location = await resolver.resolve("::ffff:192.168.1.5")
        assert location.country == "Local"
        assert location.coordinate is None
        await resolver.close()

    async def test_disabled_returns_unknown(self):
        resolver = GeolocationResolver(enabled=False)
        location = await resolver.resolve("8.8.8.8")
        assert location.country_code == "XX"
        assert location.coordinate is None

    async def test_first_provider_success(self):
        def handler(request):
            assert request.url.host == "ip-api.com"
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "country": "United States",
                    "countryCode": "US",
                    "city": "Mountain View",
                    "lat": 37.4,
                    "lon": -122.1,
                },
            )

        resolver = GeolocationResolver(client=_client(handler))
        location = await resolver.resolve("8.8.8.8")
        assert location.city == "Mountain View"
        assert location.coordinate.latitude == 37.4
        await resolver.close()

    async def test_falls_through_failing_providers(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            if request.url.host == "ip-api.com":
                return httpx.Response(200, json={"status": "fail", "message": "reserved range"})
            if request.url.host == "ipapi.co":
                return httpx.Response(429, json={"error": True})
            return httpx.Response(
                200,
                json={"success": True, "country": "Japan", "city": "Tokyo", "latitude": "35.67", "longitude": "139.65"},
            )

        resolver = GeolocationResolver(client=_client(handler))
        location = await resolver.resolve("1.1.1.1")
        assert seen == ["ip-api.com", "ipapi.co", "ipwhois.app"]
        assert location.city == "Tokyo"
        assert location.longitude == pytest.approx(139.65)
        await resolver.close()

    async def test_all_providers_failing_yields_unknown(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        resolver = GeolocationResolver(client=_client(handler))
        location = await resolver.resolve("8.8.8.8")
        assert location.country == "Unknown"
        assert location.coordinate is None
        await resolver.close()

    async def test_successful_lookup_is_cached(self, cache):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(
                200, json={"status": "success", "country": "Germany", "city": "Berlin", "lat": 52.5, "lon": 13.4}
            )

        resolver = GeolocationResolver(cache, client=_client(handler))
        first = await resolver.resolve("9.9.9.9")
        second = await resolver.resolve("9.9.9.9")
        assert len(calls) == 1
        assert not first.cached
        assert second.cached
        assert second.city == "Berlin"
        await resolver.close()

    async def test_non_json_body_is_a_failure(self):
        def handler(request):
            return httpx.Response(200, text="<html>rate limited</html>")

        resolver = GeolocationResolver(client=_client(handler))
        assert (await resolver.resolve("8.8.8.8")).country == "Unknown"
        await resolver.close()
