from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch

import httpx
import pytest

from app.config import settings
from app.schemas.order import OrderNotification
from app.services.whatsapp_service import (
    build_order_notification,
    format_brl,
    format_phone_number,
    send_order_notification,
    send_reply,
    send_text_message,
)


def make_instance(**overrides):
    values = {"instance_id": "bella-main", "api_token": "inst-token", "is_active": True}
    values.update(overrides)
    return SimpleNamespace(**values)


def make_order(**overrides):
    values = {
        "order_number": "1042",
        "customer_name": "Ana Souza",
        "customer_phone": "(11) 91234-5678",
        "total": Decimal("89.9"),
        "delivery_address": "Rua das Flores, 123",
        "created_at": datetime(2024, 3, 4, 19, 45),
    }
    values.update(overrides)
    return OrderNotification(**values)


@pytest.fixture
def mock_http():
    with patch("app.services.whatsapp_service.httpx.Client") as mock_client_class:
        client = mock_client_class.return_value.__enter__.return_value
        client.post.return_value = Mock(is_success=True, status_code=200, text="ok")
        yield client


class TestFormatPhoneNumber:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("(11) 98765-4321", "5511987654321"),
            ("11987654321", "5511987654321"),
            ("+55 11 98765-4321", "5511987654321"),
            ("5511987654321", "5511987654321"),
            ("1133334444", "1133334444"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_format(self, raw, expected):
        assert format_phone_number(raw) == expected


class TestFormatBrl:
    @pytest.mark.parametrize(
        "amount,expected",
        [
            (Decimal("1234.5"), "R$ 1.234,50"),
            (Decimal("0"), "R$ 0,00"),
            (Decimal("89.90"), "R$ 89,90"),
            (Decimal("1234567.891"), "R$ 1.234.567,89"),
        ],
    )
    def test_format(self, amount, expected):
        assert format_brl(amount) == expected


class TestOrderNotification:
    def test_full_text(self):
        text = build_order_notification(make_order())

        assert text.splitlines() == [
            "🆕 *NOVO PEDIDO RECEBIDO!*",
            "",
            "📋 *Pedido:* #1042",
            "👤 *Cliente:* Ana Souza",
            "📱 *Telefone:* (11) 91234-5678",
            "💰 *Total:* R$ 89,90",
            "🚚 *Entrega:* Rua das Flores, 123",
            "⏰ *Horário:* 04/03/2024 19:45",
        ]

    def test_optional_lines_omitted(self):
        text = build_order_notification(make_order(customer_phone=None, delivery_address=None))

        assert "Telefone" not in text
        assert "Entrega" not in text

    def test_sent_to_company_phone(self, mock_http):
        company = SimpleNamespace(id=1, phone="11987654321")

        assert send_order_notification(make_instance(), company, make_order()) is True

        payload = mock_http.post.call_args.kwargs["json"]
        assert payload["phone"] == "5511987654321"
        assert payload["message"].startswith("🆕 *NOVO PEDIDO RECEBIDO!*")

    def test_skipped_without_company_phone(self, mock_http):
        company = SimpleNamespace(id=1, phone=None)

        assert send_order_notification(make_instance(), company, make_order()) is False
        mock_http.post.assert_not_called()

    def test_skipped_for_inactive_instance(self, mock_http):
        company = SimpleNamespace(id=1, phone="11987654321")

        assert send_order_notification(make_instance(is_active=False), company, make_order()) is False
        mock_http.post.assert_not_called()


class TestSendMessages:
    def test_text_message(self, mock_http, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_api_base_url", "http://provider/")

        assert send_text_message(make_instance(), "(11) 98765-4321", "Olá!") is True

        args, kwargs = mock_http.post.call_args
        assert args[0] == "http://provider/messages/text"
        assert kwargs["json"] == {"instance_id": "bella-main", "phone": "5511987654321", "message": "Olá!"}
        assert kwargs["headers"]["Authorization"] == "Bearer inst-token"

    def test_falls_back_to_global_api_key(self, mock_http, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_api_key", "global-key")

        send_text_message(make_instance(api_token=None), "11987654321", "Olá!")

        assert mock_http.post.call_args.kwargs["headers"]["Authorization"] == "Bearer global-key"

    def test_empty_message_not_sent(self, mock_http):
        assert send_text_message(make_instance(), "11987654321", "") is False
        mock_http.post.assert_not_called()

    def test_provider_rejection(self, mock_http):
        mock_http.post.return_value = Mock(is_success=False, status_code=500, text="boom")

        assert send_text_message(make_instance(), "11987654321", "Olá!") is False

    @patch("app.services.whatsapp_service.alert_error")
    def test_transport_error(self, mock_alert, mock_http):
        mock_http.post.side_effect = httpx.ConnectError("refused")

        assert send_text_message(make_instance(), "11987654321", "Olá!") is False
        mock_alert.assert_called_once()

    def test_image_reply(self, mock_http):
        assert send_reply(
            make_instance(),
            "11987654321",
            "Nosso cardápio",
            response_type="image",
            media_url="https://cdn.example.com/menu.jpg",
        )

        args, kwargs = mock_http.post.call_args
        assert args[0].endswith("/messages/image")
        assert kwargs["json"]["image_url"] == "https://cdn.example.com/menu.jpg"
        assert kwargs["json"]["caption"] == "Nosso cardápio"

    def test_image_reply_without_media_sends_text(self, mock_http):
        send_reply(make_instance(), "11987654321", "Nosso cardápio", response_type="image", media_url=None)

        assert mock_http.post.call_args[0][0].endswith("/messages/text")
