"""
End-to-end demo: an agent buys a KPLC token through the 402 flow.

Runs the HTTP server in-process against a throwaway home directory and the
demo channel, funds an escrow through the on-ramp webhook, authorizes an
agent and then pays for an order.
"""

import json
import tempfile
import threading
import time
from pathlib import Path

import httpx
import uvicorn
from eth_account import Account

from stipend.app import create_app
from stipend.config import EngineConfig
from stipend.engine import Engine
from stipend.money import price_to_minor


BASE = "http://127.0.0.1:8402"


def run_server(engine: Engine):
    uvicorn.run(create_app(engine), host="127.0.0.1", port=8402, log_level="error")


def pay(challenge_response: httpx.Response) -> str:
    """Proof for the first requirement of a 402 response."""
    requirement = json.loads(challenge_response.headers["payment-required"])["accepts"][0]
    return json.dumps(
        {
            "amount": int(requirement["maxAmountRequired"]),
            "network": requirement["network"],
            "asset": requirement["asset"],
        }
    )


def main():
    print("🚀 Stipend demo: agent pays for electricity")
    print("=" * 45)
    print()

    home = Path(tempfile.mkdtemp(prefix="stipend-demo-"))
    engine = Engine(EngineConfig(home=home, pay_to=Account.create().address))
    threading.Thread(target=run_server, args=(engine,), daemon=True).start()
    time.sleep(1.5)
    http = httpx.Client(base_url=BASE, timeout=10)

    print("1️⃣  Sender funds an escrow...")
    intent = http.post(
        "/funding/intents",
        json={
            "senderId": "sender-demo",
            "recipient": "Mama Wanjiku",
            "phone": "0712345678",
            "totalUsd": 50,
            "categories": [{"name": "electricity", "amountUsd": 30}, {"name": "food", "amountUsd": 20}],
        },
    ).json()
    print(f"   On-ramp code: {intent['transactionCode']} ({intent['amountKes']:.0f} KES)")
    hook = http.post(
        "/webhooks/onramp",
        json={"transaction_code": intent["transactionCode"], "status": "success", "amount_usdc": "50.00"},
    ).json()
    status = http.get(f"/funding/status/{intent['transactionCode']}").json()
    print(f"   ✅ {hook['action']}: {status['escrowId']}")
    print()

    print("2️⃣  Authorizing agent...")
    agent = Account.create().address
    auth = engine.ledger.create_authorization(
        status["escrowId"], agent, price_to_minor("10.00"), "electricity"
    )
    print(f"   ✅ {agent} may spend $10.00/day on electricity ({auth.authorization_id})")
    print()

    print("3️⃣  Ordering without payment...")
    order = {"itemId": "kplc_token_500", "agentWallet": agent, "category": "electricity"}
    resp = http.post("/merchant/merchant_kplc_001/order", json=order)
    challenge = json.loads(resp.headers["payment-required"])
    requirement = challenge["accepts"][0]
    print(f"   Status: {resp.status_code}")
    print(f"   Pay {requirement['maxAmountRequired']} cents to {requirement['payTo']}")
    print()

    print("4️⃣  Ordering with payment proof...")
    resp = http.post("/merchant/merchant_kplc_001/order", json=order, headers={"X-PAYMENT": pay(resp)})
    body = resp.json()
    print(f"   Status: {resp.status_code}")
    print(f"   Settlement: {body['settlement']['status']} ({body['settlement']['externalCode']})")
    print(f"   Budget: ${body['budget']['spent']:.2f} spent, ${body['budget']['remaining']:.2f} left")
    print()

    print("5️⃣  Trying to spend on the wrong category...")
    grocery_url = "/merchant/merchant_mama_janes_001/order"
    grocery = {"itemId": "grocery_basic_weekly", "agentWallet": agent, "category": "food"}
    resp = http.post(grocery_url, json=grocery)
    resp = http.post(grocery_url, json=grocery, headers={"X-PAYMENT": pay(resp)})
    print(f"   Status: {resp.status_code} {resp.json()['reason']}")
    print()

    print(f"🎉 Done. Audit chain: {engine.audit.verify()} events under {home}")
    engine.close()


if __name__ == "__main__":
    main()
