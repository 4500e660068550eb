"""
Integration tests for trading functionality with real database.

These tests verify end-to-end flows including:
- Request -> accept -> confirm both sides -> cards transferred
- Settlement guards leaving the inventory untouched
- Trade status changes cascading to requests and invites
"""
import pytest


def headers(user_id):
    return {"X-User-Id": user_id}


def open_room_via_request(client, setup, target_card_id):
    created = client.post(
        "/trade-requests",
        json={"to_identifier": setup["receiver"]["user_id"], "target_card_id": target_card_id},
        headers=headers(setup["initiator"]["user_id"]),
    )
    assert created.status_code == 201

    accepted = client.post(
        f"/trade-requests/{created.json()['request_id']}/accept",
        headers=headers(setup["receiver"]["user_id"]),
    )
    assert accepted.status_code == 200
    return created.json()["request_id"], accepted.json()


class TestTradeIntegration:
    """Integration tests for full trade workflows."""

    def test_full_trade_flow(self, integration_client, supabase_client, trading_setup):
        """End-to-end test: request -> accept -> confirm both sides -> verify cards transferred."""
        initiator = trading_setup["initiator"]["user_id"]
        receiver = trading_setup["receiver"]["user_id"]
        request_id, room = open_room_via_request(
            integration_client, trading_setup, trading_setup["card_ids"][1]
        )

        # Step 1: initiator offers and waits
        first = integration_client.post(
            f"/trades/{room['trade_id']}/confirm",
            json={"inventory_card_id": trading_setup["initiator_card"]["inventory_card_id"]},
            headers=headers(initiator),
        )
        assert first.status_code == 200
        assert first.json()["outcome"] == "waiting_on_other_party"

        # Step 2: receiver offers and the trade settles
        second = integration_client.post(
            f"/trades/{room['trade_id']}/confirm",
            json={"inventory_card_id": trading_setup["receiver_card"]["inventory_card_id"]},
            headers=headers(receiver),
        )
        assert second.status_code == 200
        assert second.json()["outcome"] == "completed"
        assert second.json()["trade"]["status"] == "completed"

        # Verify the transfer
        initiator_cards = supabase_client.table("inventory_card").select("*").eq("user_id", initiator).execute().data
        receiver_cards = supabase_client.table("inventory_card").select("*").eq("user_id", receiver).execute().data

        assert {c["card_id"]: c["quantity"] for c in initiator_cards} == {
            trading_setup["card_ids"][0]: 1,
            trading_setup["card_ids"][1]: 1,
        }
        assert {c["card_id"]: c["quantity"] for c in receiver_cards} == {trading_setup["card_ids"][0]: 1}
        assert all(c["is_tradeable"] is False for c in initiator_cards + receiver_cards)

        # The originating request is gone and the settlement is recorded
        request = supabase_client.table("trade_request").select("*").eq("request_id", request_id).execute()
        assert request.data == []

        settlements = supabase_client.table("trade_settlement").select("*").eq(
            "trade_id", room["trade_id"]
        ).execute()
        assert [s["status"] for s in settlements.data] == ["applied"]

    def test_value_guard_keeps_inventory(self, integration_client, supabase_client, trading_setup):
        """A lopsided offer is refused and both sides can confirm again."""
        supabase_client.table("inventory_card").update({"estimated_value": 10}).eq(
            "inventory_card_id", trading_setup["receiver_card"]["inventory_card_id"]
        ).execute()
        _, room = open_room_via_request(integration_client, trading_setup, trading_setup["card_ids"][1])

        integration_client.post(
            f"/trades/{room['trade_id']}/confirm",
            json={"inventory_card_id": trading_setup["initiator_card"]["inventory_card_id"]},
            headers=headers(trading_setup["initiator"]["user_id"]),
        )
        response = integration_client.post(
            f"/trades/{room['trade_id']}/confirm",
            json={"inventory_card_id": trading_setup["receiver_card"]["inventory_card_id"]},
            headers=headers(trading_setup["receiver"]["user_id"]),
        )

        assert response.status_code == 422
        assert response.json()["error"] == "VALUE_DIFFERENCE_TOO_HIGH"

        trade = supabase_client.table("trade").select("*").eq("trade_id", room["trade_id"]).execute().data[0]
        assert trade["status"] == "pending"
        assert trade["initiator_accepted"] is False
        assert trade["receiver_accepted"] is False

        record = supabase_client.table("inventory_card").select("*").eq(
            "inventory_card_id", trading_setup["initiator_card"]["inventory_card_id"]
        ).execute().data[0]
        assert record["quantity"] == 2

    def test_rejected_room_cancels_invite(self, integration_client, supabase_client, trading_setup):
        """Rejecting the trade behind an accepted invite cancels the invite."""
        invite = integration_client.post(
            "/trade-rooms/invites",
            json={"friend_id": trading_setup["receiver"]["user_id"]},
            headers=headers(trading_setup["initiator"]["user_id"]),
        ).json()
        accepted = integration_client.post(
            f"/trade-rooms/invites/{invite['invite_id']}/accept",
            headers=headers(trading_setup["receiver"]["user_id"]),
        ).json()

        response = integration_client.patch(
            f"/trades/{accepted['trade_id']}/status",
            json={"status": "rejected"},
            headers=headers(trading_setup["receiver"]["user_id"]),
        )
        assert response.status_code == 200

        stored = supabase_client.table("trade_room_invite").select("*").eq(
            "invite_id", invite["invite_id"]
        ).execute().data[0]
        assert stored["status"] == "cancelled"
