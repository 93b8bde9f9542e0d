"""
Telegram bot using aiogram 3.x
Thin surface over the payment core: start/referral, trial, wallet, buy, renew,
manual receipts and admin review. Core calls are sync and run in a worker thread.
"""
import asyncio
import logging
from typing import Any, Callable

from aiogram import Bot, Dispatcher, F, Router
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.fsm.storage.redis import RedisStorage
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    KeyboardButton,
    Message,
    ReplyKeyboardMarkup,
)

from vpnshop.core.config import settings
from vpnshop.core.errors import AppError
from vpnshop.core.logging import configure_logging
from vpnshop.db.session import get_db_session
from vpnshop.models.payment import PaymentGateway, PaymentStatus
from vpnshop.referral.config import build_referral_link, parse_referral
from vpnshop.referral.service import ReferralService
from vpnshop.services.app_settings.settings_service import AppSettingsService
from vpnshop.services.payments.orchestrator import PaymentOrchestrator
from vpnshop.services.plans.service import PlanService
from vpnshop.services.rate_limit import purchase_limiter, start_limiter
from vpnshop.services.users.service import UserService
from vpnshop.services.wallet.service import WalletService
from vpnshop.utils.currency import format_tomans
from vpnshop.utils.format import format_service_line

configure_logging("bot")
logger = logging.getLogger("bot")

router = Router()

BTN_BUY = "🛒 Buy"
BTN_SERVICES = "📦 My services"
BTN_WALLET = "👛 Wallet"
BTN_TRIAL = "🎁 Free trial"
BTN_REFERRAL = "🤝 Invite friends"

GENERIC_ERROR = "Something went wrong. Please try again later."
SKIP_WORDS = {"-", "skip", "no"}


class ShopStates(StatesGroup):
    waiting_charge_amount = State()
    waiting_service_name = State()
    waiting_promo = State()
    waiting_gateway = State()
    waiting_receipt = State()


def main_menu_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=BTN_BUY), KeyboardButton(text=BTN_SERVICES)],
            [KeyboardButton(text=BTN_WALLET), KeyboardButton(text=BTN_TRIAL)],
            [KeyboardButton(text=BTN_REFERRAL)],
        ],
        resize_keyboard=True,
    )


def gateway_keyboard(prefix: str, allow_wallet: bool) -> InlineKeyboardMarkup:
    rows = []
    if allow_wallet:
        rows.append([InlineKeyboardButton(text="👛 Wallet", callback_data=f"{prefix}:{PaymentGateway.WALLET}")])
    rows.append([InlineKeyboardButton(text="💳 Online payment", callback_data=f"{prefix}:{PaymentGateway.HOSTED}")])
    rows.append([InlineKeyboardButton(text="🧾 Card to card", callback_data=f"{prefix}:{PaymentGateway.MANUAL}")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def _is_admin(telegram_id: int | str) -> bool:
    return str(telegram_id) in settings.admin_telegram_ids_set


def _parse_start_raw_arg(text: str | None) -> str | None:
    """Extract raw argument from /start command. E.g. '/start ref_123' -> 'ref_123'."""
    if not text or not text.strip():
        return None
    parts = text.strip().split()
    if len(parts) < 2:
        return None
    return parts[1]


async def run_core(func: Callable[..., Any], *args: Any) -> Any:
    """Run a sync unit of work (own DB session) off the event loop."""

    def work():
        with get_db_session() as db:
            return func(db, *args)

    return await asyncio.to_thread(work)


# ===========================================
# Start, referral
# ===========================================


@router.message(CommandStart())
async def cmd_start(message: Message, state: FSMContext):
    """Handle /start. Supports referral deep links: /start ref_<telegram id>."""
    telegram_id = str(message.from_user.id)
    u = message.from_user
    if not start_limiter.hit(telegram_id):
        return

    ref_telegram_id = parse_referral(_parse_start_raw_arg(message.text))

    def work(db):
        user, created = UserService(db).get_or_create_user(
            telegram_id, telegram_username=u.username, first_name=u.first_name
        )
        if ref_telegram_id:
            ReferralService(db).attribute(user, ref_telegram_id)
        return created

    try:
        created = await run_core(work)
    except Exception:
        logger.exception("Error in cmd_start", extra={"telegram_id": telegram_id})
        await message.answer(GENERIC_ERROR)
        return

    await state.clear()
    greeting = "👋 Welcome to the VPN shop!" if created else "👋 Welcome back!"
    await message.answer(f"{greeting}\nPick an option from the menu.", reply_markup=main_menu_keyboard())
    logger.info("start", extra={"telegram_id": telegram_id})


@router.message(Command("referral"))
@router.message(F.text == BTN_REFERRAL)
async def referral_link(message: Message):
    link = build_referral_link(message.from_user.id)
    await message.answer(f"Share your link. You get a reward on your friend's first purchase:\n{link}")


@router.message(Command("cancel"))
async def cmd_cancel(message: Message, state: FSMContext):
    data = await state.get_data()
    await state.clear()
    payment_id = data.get("payment_id")
    if payment_id:
        telegram_id = str(message.from_user.id)

        def work(db):
            orch = PaymentOrchestrator(db)
            orch.cancel_payment(payment_id, orch.users.require_by_telegram_id(telegram_id))

        try:
            await run_core(work)
        except AppError:
            pass  # already paid, reviewed or failed: nothing to cancel
    await message.answer("Canceled.", reply_markup=main_menu_keyboard())


# ===========================================
# Trial
# ===========================================


@router.message(Command("trial"))
@router.message(F.text == BTN_TRIAL)
async def cmd_trial(message: Message):
    telegram_id = str(message.from_user.id)
    if not purchase_limiter.hit(telegram_id):
        await message.answer("Too many attempts. Please wait a minute.")
        return

    def work(db):
        orch = PaymentOrchestrator(db)
        service = orch.create_trial_subscription(telegram_id)
        user = orch.users.require_by_telegram_id(telegram_id)
        orch.delivery.deliver_service(user, service, "🎁 Your free trial is ready.")

    try:
        await run_core(work)
    except AppError as e:
        await message.answer(e.message)
    except Exception:
        logger.exception("trial_failed", extra={"telegram_id": telegram_id})
        await message.answer(GENERIC_ERROR)


# ===========================================
# Services list
# ===========================================


@router.message(Command("services"))
@router.message(F.text == BTN_SERVICES)
async def cmd_services(message: Message):
    telegram_id = str(message.from_user.id)

    def work(db):
        users = UserService(db)
        user = users.get_by_telegram_id(telegram_id)
        if not user:
            return []
        return [
            (s.id, s.name, format_service_line(s.name, s.traffic_limit_bytes - (s.last_known_used_bytes or 0), s.expire_at), s.is_trial)
            for s in users.list_services(user)
        ]

    rows = await run_core(work)
    if not rows:
        await message.answer("You have no services yet.")
        return
    buttons = [
        [InlineKeyboardButton(text=f"🔄 Renew {name}", callback_data=f"renew_svc:{service_id}")]
        for service_id, name, _, is_trial in rows
        if not is_trial
    ]
    text = "\n".join(line for _, _, line, _ in rows)
    await message.answer(text, reply_markup=InlineKeyboardMarkup(inline_keyboard=buttons) if buttons else None)


# ===========================================
# Wallet
# ===========================================


@router.message(Command("wallet"))
@router.message(F.text == BTN_WALLET)
async def cmd_wallet(message: Message):
    telegram_id = str(message.from_user.id)

    def work(db):
        user, _ = UserService(db).get_or_create_user(telegram_id)
        wallet = WalletService(db)
        return user.wallet_balance or 0, [
            (t.type, t.amount_tomans) for t in wallet.list_transactions(user.id, limit=5)
        ]

    balance, recent = await run_core(work)
    lines = [f"👛 Balance: {format_tomans(balance)}"]
    for tx_type, amount in recent:
        lines.append(f"{'+' if amount > 0 else ''}{amount:,} ({tx_type.lower()})")
    kb = InlineKeyboardMarkup(inline_keyboard=[[InlineKeyboardButton(text="➕ Charge", callback_data="wallet_charge")]])
    await message.answer("\n".join(lines), reply_markup=kb)


@router.message(Command("charge"))
@router.callback_query(F.data == "wallet_charge")
async def charge_start(event: Message | CallbackQuery, state: FSMContext):
    message = event.message if isinstance(event, CallbackQuery) else event
    if isinstance(event, CallbackQuery):
        await event.answer()
    await state.clear()
    await state.set_state(ShopStates.waiting_charge_amount)
    await message.answer(
        f"Enter the amount in tomans ({settings.min_wallet_charge_tomans:,} – {settings.max_wallet_charge_tomans:,}):"
    )


@router.message(ShopStates.waiting_charge_amount)
async def charge_amount(message: Message, state: FSMContext):
    raw = (message.text or "").replace(",", "").strip()
    if not raw.isdigit():
        await message.answer("Please send a whole number.")
        return
    await state.update_data(flow="charge", amount=int(raw))
    await state.set_state(ShopStates.waiting_gateway)
    await message.answer("Choose a payment method:", reply_markup=gateway_keyboard("pay_gw", allow_wallet=False))


# ===========================================
# Buy / renew
# ===========================================


@router.message(Command("buy"))
@router.message(F.text == BTN_BUY)
async def cmd_buy(message: Message, state: FSMContext):
    await state.clear()

    def work(db):
        plans = PlanService(db).list_active()
        return [(p.id, p.display_name or p.name, p.traffic_gb, p.duration_days, p.price_tomans) for p in plans]

    plans = await run_core(work)
    if not plans:
        await message.answer("No plans are available right now.")
        return
    rows = [
        [InlineKeyboardButton(
            text=f"{name} · {gb} GB · {days} days · {format_tomans(price)}",
            callback_data=f"buy_plan:{plan_id}",
        )]
        for plan_id, name, gb, days, price in plans
    ]
    await message.answer("Choose a plan:", reply_markup=InlineKeyboardMarkup(inline_keyboard=rows))


@router.callback_query(F.data.startswith("buy_plan:"))
async def buy_plan_chosen(callback: CallbackQuery, state: FSMContext):
    await callback.answer()
    await state.update_data(flow="buy", plan_id=callback.data.split(":", 1)[1])
    await state.set_state(ShopStates.waiting_service_name)
    await callback.message.answer("Name your service (3-24 latin letters, digits, '-' or '_'):")


@router.message(ShopStates.waiting_service_name)
async def buy_service_name(message: Message, state: FSMContext):
    await state.update_data(service_name=(message.text or "").strip())
    await state.set_state(ShopStates.waiting_promo)
    await message.answer("Have a promo code? Send it, or send '-' to skip.")


@router.callback_query(F.data.startswith("renew_svc:"))
async def renew_service_chosen(callback: CallbackQuery, state: FSMContext):
    await callback.answer()
    await state.clear()
    await state.update_data(flow="renew", service_id=callback.data.split(":", 1)[1])
    await state.set_state(ShopStates.waiting_promo)
    await callback.message.answer("Have a promo code? Send it, or send '-' to skip.")


@router.message(ShopStates.waiting_promo)
async def promo_entered(message: Message, state: FSMContext):
    text = (message.text or "").strip()
    await state.update_data(promo_code=None if text.lower() in SKIP_WORDS else text)
    await state.set_state(ShopStates.waiting_gateway)
    await message.answer("Choose a payment method:", reply_markup=gateway_keyboard("pay_gw", allow_wallet=True))


@router.callback_query(ShopStates.waiting_gateway, F.data.startswith("pay_gw:"))
async def gateway_chosen(callback: CallbackQuery, state: FSMContext):
    await callback.answer()
    telegram_id = str(callback.from_user.id)
    gateway = callback.data.split(":", 1)[1]
    data = await state.get_data()
    if not purchase_limiter.hit(telegram_id):
        await callback.message.answer("Too many attempts. Please wait a minute.")
        return

    def work(db):
        orch = PaymentOrchestrator(db)
        flow = data.get("flow")
        if flow == "charge":
            payment = orch.create_wallet_charge_payment(telegram_id, data.get("amount", 0), gateway)
        elif flow == "buy":
            payment = orch.create_purchase_payment(
                telegram_id, data.get("plan_id"), data.get("service_name", ""), gateway, data.get("promo_code")
            )
        else:
            payment = orch.create_renew_payment(telegram_id, data.get("service_id"), gateway, data.get("promo_code"))

        if payment.gateway == PaymentGateway.WALLET:
            orch.delivery.deliver_payment_result(payment)
            return {"kind": "done"}
        if payment.gateway == PaymentGateway.HOSTED:
            order = orch.create_hosted_order(payment.id)
            return {"kind": "hosted", "payment_id": payment.id, "link": order.pay_link}
        return {
            "kind": "manual",
            "payment_id": payment.id,
            "amount": payment.amount_tomans,
            "card": AppSettingsService(db).card_number(),
        }

    try:
        result = await run_core(work)
    except AppError as e:
        await state.clear()
        await callback.message.answer(e.message)
        return
    except Exception:
        logger.exception("payment_start_failed", extra={"telegram_id": telegram_id})
        await state.clear()
        await callback.message.answer(GENERIC_ERROR)
        return

    if result["kind"] == "done":
        await state.clear()
        return
    if result["kind"] == "hosted":
        await state.clear()
        kb = InlineKeyboardMarkup(inline_keyboard=[[InlineKeyboardButton(text="💳 Pay", url=result["link"])]])
        await callback.message.answer("Open the payment page to finish:", reply_markup=kb)
        return

    await state.set_state(ShopStates.waiting_receipt)
    await state.update_data(payment_id=result["payment_id"])
    await callback.message.answer(
        f"Transfer {format_tomans(result['amount'])} to card:\n{result['card']}\n\n"
        "Then send a photo of the receipt here. /cancel to abort."
    )


# ===========================================
# Manual receipts and admin review
# ===========================================


@router.message(ShopStates.waiting_receipt, F.photo)
async def receipt_photo(message: Message, state: FSMContext):
    data = await state.get_data()
    payment_id = data.get("payment_id")
    file_id = message.photo[-1].file_id

    def work(db):
        orch = PaymentOrchestrator(db)
        payment = orch.submit_manual_receipt(payment_id, file_id)
        orch.delivery.notify_manual_review(payment)

    try:
        await run_core(work)
    except AppError as e:
        await state.clear()
        await message.answer(e.message)
        return
    await state.clear()
    await message.answer("Receipt received. We will confirm it shortly.", reply_markup=main_menu_keyboard())


@router.message(ShopStates.waiting_receipt)
async def receipt_wrong_input(message: Message):
    await message.answer("Please send the receipt as a photo, or /cancel.")


@router.callback_query(F.data.startswith("manual_approve:"))
async def manual_approve(callback: CallbackQuery):
    if not _is_admin(callback.from_user.id):
        await callback.answer("Admins only", show_alert=True)
        return
    payment_id = callback.data.split(":", 1)[1]
    reviewer = str(callback.from_user.id)

    def work(db):
        orch = PaymentOrchestrator(db)
        try:
            payment = orch.approve_manual_payment(payment_id, reviewer)
        except AppError as e:
            orch.report_completion_failure(payment_id, e)
            raise
        orch.delivery.deliver_payment_result(payment)
        return payment.status

    try:
        status = await run_core(work)
    except AppError as e:
        await callback.answer(e.message, show_alert=True)
        return
    await callback.answer("Approved" if status == PaymentStatus.SUCCESS else status)
    await callback.message.edit_reply_markup(reply_markup=None)


@router.callback_query(F.data.startswith("manual_deny:"))
async def manual_deny(callback: CallbackQuery):
    if not _is_admin(callback.from_user.id):
        await callback.answer("Admins only", show_alert=True)
        return
    payment_id = callback.data.split(":", 1)[1]
    reviewer = str(callback.from_user.id)

    def work(db):
        orch = PaymentOrchestrator(db)
        payment = orch.reject_manual_payment(payment_id, reviewer, "receipt rejected")
        orch.delivery.notify_payment_rejected(payment)

    try:
        await run_core(work)
    except AppError as e:
        await callback.answer(e.message, show_alert=True)
        return
    await callback.answer("Rejected")
    await callback.message.edit_reply_markup(reply_markup=None)


async def main():
    bot = Bot(token=settings.telegram_bot_token)
    storage = RedisStorage.from_url(settings.redis_url)
    dp = Dispatcher(storage=storage)
    dp.include_router(router)

    await bot.delete_webhook(drop_pending_updates=True)
    logger.info("Bot started successfully!")
    try:
        await dp.start_polling(bot, allowed_updates=["message", "callback_query"])
    finally:
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
