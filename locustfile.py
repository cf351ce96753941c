from locust import HttpUser, task, between
import os
import random

# Optional: id of a seeded product with plenty of stock, enables checkout traffic
PRODUCT_ID = os.getenv("LOCUST_PRODUCT_ID")


class ShopperUser(HttpUser):
    wait_time = between(0.1, 0.5)

    def on_start(self):
        # Register a fresh account; the session cookie stays on self.client
        email = f"shopper_{random.randint(1, 1_000_000)}@example.com"
        r = self.client.post("/auth/register", json={"email": email, "password": "locust-pass"})
        if r.status_code == 409:
            r = self.client.post("/auth/login", json={"email": email, "password": "locust-pass"})
        self.logged_in = r.status_code in (200, 201)
        self.order_ids = []

    @task(3)
    def list_orders(self):
        if self.logged_in:
            self.client.get("/orders")

    @task(1)
    def checkout(self):
        if not (self.logged_in and PRODUCT_ID):
            return
        qty = random.randint(1, 3)
        r = self.client.post("/checkout", json={"items": [{"product_id": int(PRODUCT_ID), "quantity": qty}]})
        if r.status_code == 201:
            self.order_ids.append(r.json()["id"])

    @task(2)
    def payment_status(self):
        if self.logged_in and self.order_ids:
            oid = random.choice(self.order_ids)
            self.client.get(f"/orders/{oid}/payment-status", name="/orders/[id]/payment-status")
