import os
import logging

logger = logging.getLogger(__name__)

# Stripe Configuration
STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")

# DodoPayments Configuration
DODO_PAYMENTS_API_KEY: str = os.getenv("DODO_PAYMENTS_API_KEY", "")
DODO_PAYMENTS_WEBHOOK_SECRET: str = os.getenv("DODO_PAYMENTS_WEBHOOK_SECRET", "")

# PayPal Configuration
PAYPAL_CLIENT_ID: str = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET: str = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_WEBHOOK_ID: str = os.getenv("PAYPAL_WEBHOOK_ID", "")
PAYPAL_API_URL: str = os.getenv("PAYPAL_API_URL", "https://api-m.paypal.com")


def _log_provider_config():
    """Log the status of payment provider environment variables for debugging"""
    provider_vars = {
        "STRIPE_SECRET_KEY": STRIPE_SECRET_KEY,
        "STRIPE_WEBHOOK_SECRET": STRIPE_WEBHOOK_SECRET,
        "DODO_PAYMENTS_API_KEY": DODO_PAYMENTS_API_KEY,
        "DODO_PAYMENTS_WEBHOOK_SECRET": DODO_PAYMENTS_WEBHOOK_SECRET,
        "PAYPAL_CLIENT_ID": PAYPAL_CLIENT_ID,
        "PAYPAL_CLIENT_SECRET": PAYPAL_CLIENT_SECRET,
        "PAYPAL_WEBHOOK_ID": PAYPAL_WEBHOOK_ID,
    }

    logger.info("=== Payment Provider Configuration Status ===")
    found_count = 0
    missing_vars = []
    for var_name, var_value in provider_vars.items():
        if var_value:
            # Show first 8 characters for verification without exposing secrets
            masked_value = f"{var_value[:8]}..." if len(var_value) > 8 else var_value
            logger.info(f"✓ {var_name}: {masked_value}")
            found_count += 1
        else:
            logger.warning(f"✗ {var_name}: NOT FOUND")
            missing_vars.append(var_name)

    logger.info(f"Payment provider configuration: {found_count}/{len(provider_vars)} variables found")

    if missing_vars:
        logger.warning(f"MISSING PROVIDER VARIABLES: {', '.join(missing_vars)}")
    else:
        logger.info("✓ All payment provider environment variables are configured")

    logger.info("=============================================")


# Call the logging function when module is imported
_log_provider_config()
