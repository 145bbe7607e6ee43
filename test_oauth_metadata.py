"""
Tests for authorization server metadata and scope helpers.
"""

import pytest

from oauth_metadata import OAuthMetadataProvider, format_scope, parse_scope_string


class TestAuthorizationServerMetadata:
    """Test RFC 8414 metadata."""

    def test_endpoints(self):
        metadata = OAuthMetadataProvider("https://auth.example.com/").get_authorization_server_metadata()

        assert metadata["issuer"] == "https://auth.example.com"
        assert metadata["authorization_endpoint"] == "https://auth.example.com/authorize"
        assert metadata["token_endpoint"] == "https://auth.example.com/token"
        assert metadata["revocation_endpoint"] == "https://auth.example.com/revoke"

    def test_issuer_with_path(self):
        metadata = OAuthMetadataProvider("https://example.com/oauth").get_authorization_server_metadata()
        assert metadata["token_endpoint"] == "https://example.com/oauth/token"

    def test_capabilities(self):
        metadata = OAuthMetadataProvider("https://auth.example.com").get_authorization_server_metadata()

        assert metadata["response_types_supported"] == ["code"]
        assert set(metadata["grant_types_supported"]) == {"authorization_code", "refresh_token"}
        assert set(metadata["code_challenge_methods_supported"]) == {"S256", "plain"}
        assert "client_secret_basic" in metadata["token_endpoint_auth_methods_supported"]
        assert "none" not in metadata["token_endpoint_auth_methods_supported"]
        assert "scopes_supported" not in metadata

    def test_scopes_supported(self):
        provider = OAuthMetadataProvider("https://auth.example.com", scopes_supported=["write", "read", "read"])
        assert provider.get_authorization_server_metadata()["scopes_supported"] == ["read", "write"]


class TestWwwAuthenticate:
    """Test WWW-Authenticate challenges."""

    def test_invalid_client_uses_basic(self):
        provider = OAuthMetadataProvider("https://auth.example.com")
        header = provider.generate_www_authenticate_header(error="invalid_client")
        assert header == 'Basic realm="https://auth.example.com", error="invalid_client"'

    def test_invalid_token_uses_bearer(self):
        provider = OAuthMetadataProvider("https://auth.example.com")
        header = provider.generate_www_authenticate_header(
            error="invalid_token", error_description="Token expired", scope="read"
        )
        assert header.startswith('Bearer realm="https://auth.example.com"')
        assert 'scope="read"' in header
        assert 'error_description="Token expired"' in header


class TestMetadataValidation:
    """Test validate_metadata_consistency."""

    def test_https_valid(self):
        result = OAuthMetadataProvider("https://auth.example.com").validate_metadata_consistency()
        assert result["valid"]
        assert result["warnings"] == []

    def test_plain_http_warns(self):
        result = OAuthMetadataProvider("http://auth.example.com").validate_metadata_consistency()
        assert result["valid"]
        assert result["warnings"]

    def test_localhost_http_ok(self):
        result = OAuthMetadataProvider("http://localhost:8080").validate_metadata_consistency()
        assert result["warnings"] == []

    def test_bad_scheme(self):
        assert not OAuthMetadataProvider("ftp://auth").validate_metadata_consistency()["valid"]


class TestScopes:
    """Test scope parsing and formatting."""

    @pytest.mark.parametrize("scope,expected", [
        (None, []),
        ("", []),
        ("  ", []),
        ("read", ["read"]),
        ("read  write", ["read", "write"]),
        ("write read write", ["write", "read"]),
    ])
    def test_parse(self, scope, expected):
        assert parse_scope_string(scope) == expected

    def test_format(self):
        assert format_scope(["read", "write"]) == "read write"
        assert format_scope([]) == ""
