"""Tests for flowize.endpoints module."""

from flowize.endpoints import EndpointResolver, strip_run_suffix


class TestEndpointResolver:
    """Tests for candidate generation."""

    def test_loopback_candidates(self) -> None:
        """The /run form comes first, each with the loopback swap."""
        resolver = EndpointResolver("http://127.0.0.1:4141/run")
        assert resolver.candidates() == [
            "http://127.0.0.1:4141/run",
            "http://localhost:4141/run",
            "http://127.0.0.1:4141",
            "http://localhost:4141",
        ]

    def test_bare_endpoint_gets_run_suffix(self) -> None:
        resolver = EndpointResolver("http://localhost:4141/")
        assert resolver.candidates()[:2] == ["http://localhost:4141/run", "http://127.0.0.1:4141/run"]

    def test_host_alias(self) -> None:
        resolver = EndpointResolver("http://127.0.0.1:4141/run", host_alias="host.docker.internal")
        candidates = resolver.candidates()
        assert "http://host.docker.internal:4141/run" in candidates
        assert "http://host.docker.internal:4141" in candidates
        assert len(candidates) == len(set(candidates))

    def test_non_loopback_endpoint(self) -> None:
        resolver = EndpointResolver("http://bridge.lan:4141/run")
        assert resolver.candidates() == ["http://bridge.lan:4141/run", "http://bridge.lan:4141"]

    def test_empty_endpoint(self) -> None:
        assert EndpointResolver("  ").candidates() == []
        assert EndpointResolver("").health_urls() == []

    def test_health_urls_are_distinct(self) -> None:
        resolver = EndpointResolver("http://127.0.0.1:4141/run")
        assert resolver.health_urls() == ["http://127.0.0.1:4141/health", "http://localhost:4141/health"]

    def test_strip_run_suffix(self) -> None:
        assert strip_run_suffix("http://x:1/run") == "http://x:1"
        assert strip_run_suffix("http://x:1") == "http://x:1"
