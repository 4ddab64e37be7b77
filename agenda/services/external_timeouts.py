"""
Timeout configuration for external service calls.

Separate from the Supabase client timeouts.

Usage:
    from agenda.services.external_timeouts import MERCADO_PAGO_TIMEOUT

    async with httpx.AsyncClient(timeout=MERCADO_PAGO_TIMEOUT) as client:
        response = await client.post(url, json=data)
"""
import httpx

# Mercado Pago payments - the booking screen is waiting on the QR code
MERCADO_PAGO_TIMEOUT = httpx.Timeout(20.0, connect=5.0)

# Status checks run every couple of seconds, keep them short
MERCADO_PAGO_STATUS_TIMEOUT = httpx.Timeout(8.0, connect=3.0)
