"""Authenticated HTTP access to the assistant API."""

from .gateway import ApiResponse, RequestOptions, SessionGateway, limit_error_from_body

__all__ = ["ApiResponse", "RequestOptions", "SessionGateway", "limit_error_from_body"]
