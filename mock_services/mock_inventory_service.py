"""
mock_inventory_service.py — Mock Implementation of the Inventory Service (REST API)

This module provides a simulated Inventory Service for local runs and tests of the
order placement workflow, without relying on a real inventory backend.

The mock simulates common inventory-related scenarios:
    • Item in stock
    • Out-of-stock situations
    • Unavailable service (HTTP 503)
    • Slow responses (to trigger client timeouts)

Endpoints:
    GET /api/inventory?skuCode=...&quantity=... — Returns a JSON boolean.

Port:
    Default: 8082 (HTTP)
"""

import logging
import time

from fastapi import FastAPI, HTTPException, Query

app = FastAPI(title="Mock Inventory Service")
logging.basicConfig(level=logging.INFO)

SLOW_RESPONSE_SECONDS = 10


@app.get("/api/inventory")
def is_in_stock(skuCode: str = Query(..., min_length=1), quantity: int = Query(..., gt=0)) -> bool:
    """
    Answers whether `quantity` units of `skuCode` are in stock.

    The behavior is scenario-driven based on SKU keywords:
        - "OUT-OF-STOCK" → false
        - "UNAVAILABLE"  → HTTP 503
        - "SLOW"         → answers true after SLOW_RESPONSE_SECONDS
        - Otherwise      → true
    """
    logging.info(f"[IS] Bestandsanfrage für SKU {skuCode}, Menge {quantity}")

    if "OUT-OF-STOCK" in skuCode:
        logging.warning(f"[IS] SKU {skuCode} ist nicht auf Lager.")
        return False

    if "UNAVAILABLE" in skuCode:
        logging.error(f"[IS] Simulierter Ausfall für SKU {skuCode}.")
        raise HTTPException(status_code=503, detail="Inventory temporarily unavailable")

    if "SLOW" in skuCode:
        time.sleep(SLOW_RESPONSE_SECONDS)

    return True


if __name__ == '__main__':
    import uvicorn

    logging.info("Mock Inventory Service (REST) startet auf Port 8082...")
    uvicorn.run(app, host="0.0.0.0", port=8082)
