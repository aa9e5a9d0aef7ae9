"""Error kinds surfaced by the personalization core."""

from __future__ import annotations


class BertNewsError(Exception):
    """Base class; `status_code` is the HTTP status the API reports."""

    status_code: int = 500


class BadRequest(BertNewsError):
    """Missing or invalid required input (labels, candidates, user_id...)."""

    status_code = 400


class NotFound(BadRequest):
    """Unknown label-set fingerprint or article id."""


class UpstreamFailure(BertNewsError):
    """The classifier or embedder raised; never retried."""

    status_code = 502


class StorageFailure(BertNewsError):
    """The persistent store is unavailable or returned corrupt data."""

    status_code = 503
