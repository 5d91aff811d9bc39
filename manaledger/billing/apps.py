from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Handles Stripe subscriptions, mana wallets, refunds and gifts.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "manaledger.billing"

    def ready(self):
        """
        Import webhook handlers to register signal receivers.

        dj-stripe sends one signal per event type; importing the module
        connects our receivers when Django starts.
        """
        from manaledger.billing import webhooks  # noqa: F401
