"""
Tests for the health check endpoint and core base classes.
"""

from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.urls import reverse

from core.exceptions import BaseApplicationError, ConflictError
from core.services import ServiceResult


@pytest.mark.django_db
class TestHealthCheck:
    def test_healthy(self, client):
        response = client.get(reverse("health_check"))

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
        }

    def test_database_down(self, client):
        with patch("core.views.connection") as connection:
            connection.cursor.side_effect = DatabaseError("down")
            response = client.get(reverse("health_check"))

        assert response.status_code == 503
        assert response.json()["database"] == "disconnected"


class TestServiceResult:
    def test_success_is_truthy(self):
        result = ServiceResult.success({"id": 1})

        assert result
        assert result.data == {"id": 1}

    def test_from_exception_keeps_error_code(self):
        result = ServiceResult.from_exception(ConflictError("busy", error_code="LOCKED"))

        assert not result
        assert result.error == "busy"
        assert result.error_code == "LOCKED"

    def test_from_plain_exception(self):
        result = ServiceResult.from_exception(KeyError("x"))

        assert result.error_code == "KEYERROR"


class TestBaseApplicationError:
    def test_to_dict(self):
        error = BaseApplicationError("Invoice missing", details={"invoice_id": "i-1"})

        assert error.to_dict() == {
            "error": "Invoice missing",
            "error_code": "APPLICATION_ERROR",
            "details": {"invoice_id": "i-1"},
        }
        assert str(error) == "[APPLICATION_ERROR] Invoice missing"

    def test_details_omitted_when_empty(self):
        assert "details" not in ConflictError("busy").to_dict()
