"""
Webhook system for sending order event notifications.

Allows external systems to subscribe to order events (created, status_changed,
cancelled, payment updates). Deliveries run after the response is sent.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Any

import httpx
from fastapi import BackgroundTasks

from . import config

logger = logging.getLogger(__name__)


async def send_webhook(event_type: str, data: Dict[str, Any]) -> None:
    """
    Send webhook notifications to all registered URLs.

    Args:
        event_type: Type of event (e.g., "order.created", "order.status_changed")
        data: Event data payload
    """
    if not config.WEBHOOK_URLS:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat()
    }

    async with httpx.AsyncClient(timeout=5.0) as client:
        tasks = [send_single_webhook(client, url, payload) for url in config.WEBHOOK_URLS]

        # Send all webhooks concurrently
        await asyncio.gather(*tasks, return_exceptions=True)


async def send_single_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> None:
    """
    Send a webhook to a single URL.

    Args:
        client: HTTP client
        url: Webhook URL
        payload: Event payload
    """
    try:
        response = await client.post(url, json=payload)
        if response.status_code >= 400:
            logger.warning(f"Webhook failed for {url}: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook error for {url}: {e}")


def notify_order_created(background_tasks: BackgroundTasks, order_data: Dict[str, Any]) -> None:
    background_tasks.add_task(send_webhook, "order.created", order_data)


def notify_order_status_changed(background_tasks: BackgroundTasks, order_id: str, old_status: str, new_status: str) -> None:
    """
    Notify that an order status changed.

    Args:
        background_tasks: Request background task queue
        order_id: Order ID
        old_status: Previous status
        new_status: New status
    """
    data = {
        "orderId": order_id,
        "oldStatus": old_status,
        "newStatus": new_status
    }
    background_tasks.add_task(send_webhook, "order.status_changed", data)


def notify_order_cancelled(background_tasks: BackgroundTasks, order_id: str) -> None:
    background_tasks.add_task(send_webhook, "order.cancelled", {"orderId": order_id})


def notify_payment_updated(background_tasks: BackgroundTasks, order_id: str, transaction_id: str, status: str) -> None:
    data = {
        "orderId": order_id,
        "transactionId": transaction_id,
        "status": status
    }
    background_tasks.add_task(send_webhook, "payment.updated", data)
