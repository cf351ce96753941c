import logging
import os
from typing import List

from fastapi import FastAPI, Depends, Header, Query
from sqlalchemy.orm import Session

from .db import Base, engine, get_db
from . import config, crud, models, orders, payments, schemas
from .auth import SessionManager, current_admin, current_user, get_session_manager, require_admin, require_user
from .config import ConfigState, get_config
from .errors import (
    AuthenticationError,
    NotFoundError,
    StorefrontError,
    storefront_error_handler,
)
from .mail import LogMailer, get_mailer
from .passwords import verify_password

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create tables if not existing (for development). Existing databases go through migration/.
Base.metadata.create_all(bind=engine)

config.init_from_env()

app = FastAPI(title="Storefront API")
app.add_exception_handler(StorefrontError, storefront_error_handler)

INVALID_CREDENTIALS = "invalid credentials"


@app.get("/health")
async def health():
    return {"status": "ok"}


# -------------------- auth --------------------

@app.post("/auth/register", response_model=schemas.SessionResponse, status_code=201)
def register(body: schemas.RegisterRequest, db: Session = Depends(get_db),
             sessions: SessionManager = Depends(get_session_manager)):
    user = crud.create_user(db, body.email, body.password, name=body.name)
    sessions.create_session(user.id, user.email)
    logger.info("registered user %s", user.id)
    return {"user": user}


@app.post("/auth/login", response_model=schemas.SessionResponse)
def login(body: schemas.LoginRequest, db: Session = Depends(get_db),
          sessions: SessionManager = Depends(get_session_manager)):
    user = crud.get_user_by_email(db, body.email)
    # same message whether the email or the password was wrong
    if not user or not verify_password(body.password, user.password_hash):
        raise AuthenticationError(INVALID_CREDENTIALS)
    sessions.create_session(user.id, user.email)
    logger.info("user %s logged in", user.id)
    return {"user": user}


@app.post("/auth/logout")
def logout(sessions: SessionManager = Depends(get_session_manager)):
    sessions.destroy_session()
    return {"ok": True}


@app.get("/auth/me", response_model=schemas.UserRead)
def me(user: models.User = Depends(current_user)):
    return user


@app.post("/auth/change-password")
def change_password(body: schemas.ChangePasswordRequest, db: Session = Depends(get_db)):
    user = crud.get_user_by_email(db, body.email)
    if not user or not verify_password(body.old_password, user.password_hash):
        raise AuthenticationError(INVALID_CREDENTIALS)
    crud.set_password(db, user, body.new_password)
    return {"ok": True}


@app.post("/auth/change-email", response_model=schemas.UserRead)
def change_email(body: schemas.ChangeEmailRequest, db: Session = Depends(get_db),
                 sessions: SessionManager = Depends(get_session_manager)):
    user = require_user(db, sessions)
    if not verify_password(body.password, user.password_hash):
        raise AuthenticationError(INVALID_CREDENTIALS)
    user = crud.update_email(db, user, body.new_email)
    # the session carries the email, so reissue it
    sessions.create_session(user.id, user.email)
    return user


@app.post("/auth/forgot-password")
def forgot_password(body: schemas.ForgotPasswordRequest, db: Session = Depends(get_db),
                    cfg: ConfigState = Depends(get_config), mailer: LogMailer = Depends(get_mailer)):
    user = crud.get_user_by_email(db, body.email)
    if user:
        token = crud.create_reset_token(db, user, cfg.reset_token_ttl)
        mailer.send_password_reset(user.email, token)
    # do not reveal whether the email is registered
    return {"ok": True}


@app.post("/auth/reset-password")
def reset_password(body: schemas.ResetPasswordRequest, db: Session = Depends(get_db)):
    crud.check_password_length(body.new_password)
    user = crud.consume_reset_token(db, body.token)
    if user is None:
        db.rollback()
        raise AuthenticationError("invalid or expired reset token")
    crud.set_password(db, user, body.new_password)
    return {"ok": True}


# -------------------- orders --------------------

@app.post("/checkout", response_model=schemas.OrderRead, status_code=201)
def checkout(body: schemas.CheckoutRequest, db: Session = Depends(get_db),
             user: models.User = Depends(current_user)):
    return orders.create_order(db, user.id, body.items)


@app.get("/orders", response_model=List[schemas.OrderRead])
def list_my_orders(db: Session = Depends(get_db), user: models.User = Depends(current_user)):
    return orders.list_orders_for_user(db, user.id)


@app.get("/orders/{order_id}", response_model=schemas.OrderRead)
def get_my_order(order_id: int, db: Session = Depends(get_db), user: models.User = Depends(current_user)):
    return orders.get_order_for_user(db, order_id, user.id)


@app.get("/orders/{order_id}/payment-status", response_model=schemas.PaymentStatusRead)
def payment_status(order_id: int, db: Session = Depends(get_db), user: models.User = Depends(current_user)):
    order = orders.get_order_for_user(db, order_id, user.id)
    return {"order_id": order.id, "status": order.status, "payment_status": order.payment_status}


@app.post("/orders/{order_id}/payment/refresh", response_model=schemas.PaymentStatusRead)
def refresh_my_payment(order_id: int, db: Session = Depends(get_db), user: models.User = Depends(current_user),
                       gateway: payments.XenditClient = Depends(payments.get_gateway)):
    order = orders.get_order_for_user(db, order_id, user.id)
    order = payments.refresh_payment(db, gateway, order)
    return {"order_id": order.id, "status": order.status, "payment_status": order.payment_status}


# -------------------- payments --------------------

@app.post("/payments/invoice", response_model=schemas.InvoiceCreated)
def create_invoice(body: schemas.InvoiceCreateRequest, db: Session = Depends(get_db),
                   user: models.User = Depends(current_user),
                   gateway: payments.XenditClient = Depends(payments.get_gateway),
                   cfg: ConfigState = Depends(get_config)):
    order = orders.get_order_for_user(db, body.order_id, user.id)
    return payments.start_payment(db, gateway, order, user, body.customer, cfg)


@app.post("/payments/webhook")
def payment_webhook(invoice: schemas.GatewayInvoice, db: Session = Depends(get_db),
                    cfg: ConfigState = Depends(get_config),
                    x_callback_token: str | None = Header(default=None)):
    if cfg.gateway_callback_token:
        if not payments.verify_callback_token(cfg.gateway_callback_token, x_callback_token):
            logger.warning("rejected webhook with invalid callback token")
            raise AuthenticationError("invalid callback token")
    elif not cfg.debug:
        logger.error("webhook received but XENDIT_CALLBACK_TOKEN is not configured")
        raise AuthenticationError("webhook verification not configured")

    order = orders.find_order_by_invoice(db, invoice.external_id)
    if order is None:
        logger.error("no order for invoice %s (gateway id %s)", invoice.external_id, invoice.id)
        raise NotFoundError("order not found")
    order = payments.reconcile(db, order, invoice)
    logger.info("webhook processed: %s - %s", invoice.external_id, invoice.status)
    return {"status": "success", "order_id": order.id, "order_status": order.status}


# -------------------- admin --------------------

@app.get("/admin/users", response_model=List[schemas.UserRead])
def admin_list_users(db: Session = Depends(get_db), admin: models.User = Depends(current_admin)):
    return crud.list_users(db)


@app.post("/admin/update-role", response_model=schemas.UserRead)
def admin_update_role(body: schemas.RoleUpdate, db: Session = Depends(get_db),
                      admin: models.User = Depends(current_admin)):
    user = crud.update_user_role(db, body.email, body.role)
    logger.info("admin %s set role of user %s to %s", admin.id, user.id, user.role)
    return user


@app.post("/admin/create-admin", response_model=schemas.UserRead)
def admin_create_admin(body: schemas.AdminCreate, db: Session = Depends(get_db),
                       sessions: SessionManager = Depends(get_session_manager)):
    if crud.has_admin(db):
        admin = require_admin(db, sessions)
        user, created = crud.provision_admin(db, body.email, body.password)
        logger.info("admin %s %s admin account %s", admin.id, "created" if created else "promoted", user.id)
        return user
    # bootstrap: with no admin yet, only a brand-new account may be created
    user = crud.create_user(db, body.email, body.password, role=models.Role.admin.value)
    logger.warning("bootstrap admin account %s created", user.id)
    return user


@app.get("/admin/customers", response_model=schemas.CustomerList)
def admin_list_customers(db: Session = Depends(get_db), admin: models.User = Depends(current_admin)):
    return {"customers": crud.list_customers(db)}


@app.get("/admin/stats", response_model=schemas.StatsRead)
def admin_stats(db: Session = Depends(get_db), admin: models.User = Depends(current_admin)):
    return orders.order_stats(db)


@app.get("/admin/analytics", response_model=schemas.AnalyticsRead)
def admin_analytics(db: Session = Depends(get_db), admin: models.User = Depends(current_admin)):
    return orders.order_analytics(db)


@app.get("/admin/orders", response_model=List[schemas.OrderRead])
def admin_list_orders(status: str | None = Query(default=None), db: Session = Depends(get_db),
                      admin: models.User = Depends(current_admin)):
    return orders.list_orders(db, status=status)


@app.patch("/admin/orders/{order_id}/status", response_model=schemas.OrderRead)
def admin_update_order_status(order_id: int, body: schemas.OrderStatusUpdate, db: Session = Depends(get_db),
                              admin: models.User = Depends(current_admin)):
    order = orders.get_order(db, order_id)
    return orders.transition_order(db, order, body.status)


@app.post("/admin/orders/{order_id}/reconcile", response_model=schemas.OrderRead)
def admin_reconcile_order(order_id: int, db: Session = Depends(get_db),
                          admin: models.User = Depends(current_admin),
                          gateway: payments.XenditClient = Depends(payments.get_gateway)):
    order = orders.get_order(db, order_id)
    return payments.refresh_payment(db, gateway, order)


@app.get("/admin/settings")
def admin_get_settings(db: Session = Depends(get_db), admin: models.User = Depends(current_admin)):
    return {"settings": crud.get_settings(db)}


@app.put("/admin/settings")
@app.post("/admin/settings")
def admin_put_setting(body: schemas.SettingWrite, db: Session = Depends(get_db),
                      admin: models.User = Depends(current_admin)):
    row = crud.upsert_setting(db, body.key, body.value)
    return {"key": row.key, "value": row.value, "updated_at": row.updated_at}


# -------------------- debug (DEBUG=1 only) --------------------

@app.get("/debug/auth")
def debug_auth(db: Session = Depends(get_db), cfg: ConfigState = Depends(get_config),
               sessions: SessionManager = Depends(get_session_manager)):
    if not cfg.debug:
        raise NotFoundError("not found")
    session = sessions.get_session()
    user = db.get(models.User, session.user_id) if session else None
    return {
        "cookie_present": sessions.has_cookie(),
        "session": {"user_id": session.user_id, "email": session.email} if session else None,
        "user_found": user is not None,
        "role": user.role if user else None,
    }
