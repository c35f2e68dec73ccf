"""Credential storage, token refresh and the login/logout flow."""
