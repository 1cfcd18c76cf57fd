"""
External collaborators consumed by the engine.

- OfferApplier: applies an accepted discount/pause at the billing provider.
  Invoked only when a cancel session reaches SAVED.
- Notifier: fire-and-forget notifications (saves, recoveries, and the
  automated recovery notices sent to customers with a failed payment).
  Delivery failures are logged and never propagate.

The defaults log instead of calling out; deployments swap in real
implementations on app.state.
"""
import logging


logger = logging.getLogger(__name__)


class OfferApplier:
    """Apply a retention offer for a saved customer. Raise on failure."""

    def apply(self, saved_customer) -> None:
        raise NotImplementedError


class LoggingOfferApplier(OfferApplier):
    def apply(self, saved_customer) -> None:
        logger.info(
            f"Offer apply requested: session={saved_customer.cancel_session_id} "
            f"type={saved_customer.save_type.value} subscription={saved_customer.subscription_reference}"
        )


class Notifier:
    """Outbound notifications. Implementations may raise; callers swallow."""

    def case_recovered(self, case, amount, currency: str) -> None:
        raise NotImplementedError

    def customer_saved(self, saved_customer) -> None:
        raise NotImplementedError

    def recovery_notice(self, case, attempt: int) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def case_recovered(self, case, amount, currency: str) -> None:
        logger.info(f"Notify: case {case.id} recovered {amount} {currency}")

    def customer_saved(self, saved_customer) -> None:
        logger.info(f"Notify: customer saved via session {saved_customer.cancel_session_id}")

    def recovery_notice(self, case, attempt: int) -> None:
        logger.info(f"Notify: recovery notice #{attempt} for case {case.id} to {case.customer_reference}")


def notify_safely(notifier, method: str, *args) -> bool:
    """Call a notifier method, logging and swallowing any failure."""
    if notifier is None:
        return False
    try:
        getattr(notifier, method)(*args)
        return True
    except Exception as e:
        logger.warning(f"Notifier {method} failed: {e}")
        return False
