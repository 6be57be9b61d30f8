import logging

logger = logging.getLogger(__name__)


class LoggingMailer:
    """Mail collaborator that records outgoing messages in the log.

    Delivery is handled outside this service; swap in a real sender with the
    same ``send(email, subject, body)`` signature.
    """

    def send(self, email, subject, body):
        logger.info(f"Mail to {email}: {subject}\n{body}")


def render_bill(member, order):
    lines = [f"Hello {member.full_name},", "", f"Thank you for your order #{order.order_id}.", ""]
    for item in order.items:
        lines.append(f"  {item.title} x{item.quantity} @ ${item.unit_price:.2f}")
    lines.extend([
        "",
        f"Subtotal:          ${order.subtotal:.2f}",
        f"Book discounts:   -${order.item_discount:.2f}",
        f"Bulk discount:    -${order.bulk_discount:.2f}",
        f"Loyalty discount: -${order.loyalty_discount:.2f}",
        f"Total:             ${order.total_amount:.2f}",
        "",
        f"Your claim code is {order.claim_code}. Show it at the counter to collect your books.",
    ])
    return '\n'.join(lines)


class BillNotifier:
    """Sends the claim-code bill after checkout. Never raises.

    With a running APScheduler scheduler the send is queued as a one-shot job,
    otherwise it runs inline.
    """

    def __init__(self, mailer, scheduler=None):
        self.mailer = mailer
        self.scheduler = scheduler

    def notify_order_placed(self, member, order):
        try:
            subject = f"Your order #{order.order_id} - claim code {order.claim_code}"
            body = render_bill(member, order)
            if self.scheduler is not None and self.scheduler.running:
                self.scheduler.add_job(self._deliver, args=[member.email, subject, body])
            else:
                self._deliver(member.email, subject, body)
        except Exception as e:
            logger.error(f"Failed to queue bill for order {order.order_id}: {str(e)}")

    def _deliver(self, email, subject, body):
        try:
            self.mailer.send(email, subject, body)
            logger.debug(f"Bill sent to {email}")
        except Exception as e:
            logger.error(f"Failed to send bill to {email}: {str(e)}")
