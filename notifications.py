"""
Customer notifications: in-app messages, email, and the post-checkout job.

Nothing in the post-checkout path raises. Invoice rendering and email
delivery each get a bounded wait on a worker thread; when either fails or
times out the failure is logged and the job moves on.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import resend
from pymongo.errors import PyMongoError

import invoices
from checkout import maybe_oid, unit_price
from errors import NotificationDeliveryError

logger = logging.getLogger(__name__)

RESEND_API_KEY = (os.getenv("RESEND_API_KEY") or "").strip()
MAIL_FROM = os.getenv("MAIL_FROM", "My Shop <orders@example.com>")
INVOICE_TIMEOUT_SECONDS = float(os.getenv("INVOICE_TIMEOUT_SECONDS", "30"))
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "20"))

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")


def run_with_timeout(fn: Callable[..., Any], timeout: float, *args, **kwargs) -> Optional[Any]:
    """Run fn on a worker thread; None if it raises or misses the deadline.

    A timed-out call keeps running in the background; its result is dropped.
    """
    future = _executor.submit(fn, *args, **kwargs)
    name = getattr(fn, "__name__", repr(fn))
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning("%s did not finish within %ss", name, timeout)
    except Exception:
        logger.exception("%s failed", name)
    return None


def send_email(to: str, subject: str, text: str,
               attachments: Optional[List[Tuple[str, bytes]]] = None) -> Optional[Dict[str, Any]]:
    if not RESEND_API_KEY:
        logger.info("RESEND_API_KEY not set, skipping email to %s (%s)", to, subject)
        return None
    resend.api_key = RESEND_API_KEY
    payload: Dict[str, Any] = {"from": MAIL_FROM, "to": [to], "subject": subject, "text": text}
    if attachments:
        payload["attachments"] = [{"filename": name, "content": list(data)} for name, data in attachments]
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        raise NotificationDeliveryError(f"Email to {to} failed: {exc}") from exc
    logger.info("Email sent to %s (%s)", to, subject)
    return response


def notify(db, user_id: str, title: str, message: str, type: str = "system",
           link: Optional[str] = None) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    doc = {
        "user_id": user_id,
        "title": title,
        "message": message,
        "type": type,
        "read": False,
        "link": link,
        "created_at": now,
        "updated_at": now,
    }
    doc["_id"] = db["notification"].insert_one(doc).inserted_id
    return doc


def _find_user(db, user_id: str) -> Dict[str, Any]:
    uid = maybe_oid(user_id)
    return (db["user"].find_one({"_id": uid}) if uid is not None else None) or {}


def dispatch_order_invoice(db, order: Dict[str, Any]) -> Optional[str]:
    """Render, store and email the invoice for a committed order.

    Returns the invoice URL when the file was written.
    """
    user = _find_user(db, order["user_id"])
    path = run_with_timeout(invoices.write_invoice, INVOICE_TIMEOUT_SECONDS,
                            order, user.get("name", "Customer"))
    url = invoices.invoice_url(order["_id"]) if path is not None else None

    if path is not None and user.get("email"):
        body = (
            f"Hello {user.get('name', 'there')},\n\n"
            f"Thank you for your order {order['_id']}.\n"
            f"Total: ${order['total']:.2f}\n\n"
            "Your invoice is attached.\n"
        )
        sent = run_with_timeout(send_email, EMAIL_TIMEOUT_SECONDS, user["email"],
                                f"Your invoice for order {order['_id']}", body,
                                [(path.name, path.read_bytes())])
        if sent is None:
            logger.warning("Invoice email for order %s was not confirmed", order["_id"])

    try:
        notify(db, order["user_id"], "Order received",
               f"Your order {order['_id']} is being processed.", "order", link=url)
    except PyMongoError:
        logger.exception("Could not store order notification for %s", order["_id"])
    return url


def notify_order_status(db, order: Dict[str, Any]) -> None:
    try:
        notify(db, order["user_id"], "Order update",
               f"Your order {order['_id']} is now {order['status']}.", "order")
    except PyMongoError:
        logger.exception("Could not store status notification for order %s", order["_id"])


def notify_discount(db, product: Dict[str, Any]) -> Dict[str, int]:
    """Tell wishlist subscribers that a product got cheaper.

    Only entries whose last notified price is above the new price are
    contacted, so repeated discount updates do not spam users.
    """
    new_price = unit_price(product)
    product_id = str(product["_id"])
    successful = failed = skipped = 0
    for entry in db["wishlist"].find({"product_id": product_id, "notify_on_discount": True}):
        last = entry.get("last_notified_price")
        if last is not None and new_price >= last:
            skipped += 1
            continue
        user = _find_user(db, entry["user_id"])
        message = (f"{product.get('name', 'A product')} is now {product.get('discount', 0):g}% off! "
                   f"New price: ${new_price:.2f} (was ${product['price']:.2f})")
        try:
            notify(db, entry["user_id"], "Price Drop Alert!", message, "discount",
                   link=f"/products/{product_id}")
            db["wishlist"].update_one({"_id": entry["_id"]}, {"$set": {"last_notified_price": new_price}})
        except PyMongoError:
            logger.exception("Failed to notify user %s about product %s", entry["user_id"], product_id)
            failed += 1
            continue
        if user.get("email"):
            run_with_timeout(send_email, EMAIL_TIMEOUT_SECONDS, user["email"], "Price Drop Alert!",
                             f"Hello {user.get('name', 'there')},\n\n{message}\n")
        successful += 1
    return {"successful": successful, "failed": failed, "skipped": skipped}
