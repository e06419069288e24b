"""Telegram front end for the expense bot."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .domain.entities import DeleteRequest, EditRequest, PendingTransaction, ResetRequest, TokenKind
from .errors import DeliveryError, ExpenseBotError, ImageFetchError, PayloadError
from .ledger import SqlLedger
from .pipeline.confirmation import confirmation_text, format_amount
from .pipeline.ports import ImageSource, MessageGateway
from .pipeline.service import ProcessingStatus, ReceiptPipeline
from .receipts.parser import parse_manual_entry
from .schemas import ImageRef, ReplyContext

logger = logging.getLogger(__name__)

PIPELINE_KEY = "pipeline"
LEDGER_KEY = "ledger"

YES_WORDS = {"yes", "y", "ok", "okay", "confirm", "はい", "確定"}
NO_WORDS = {"no", "n", "cancel", "いいえ", "キャンセル"}
RESET_WORDS = {"reset", "リセット"}

ACTION_LABELS = {
    TokenKind.EXPENSE: ("✅ Save", "❌ Discard"),
    TokenKind.DELETE: ("🗑 Delete", "❌ Keep"),
    TokenKind.EDIT: ("✏️ Apply", "❌ Keep"),
    TokenKind.RESET: ("🔄 Reset", "❌ Cancel"),
}


def _confirmation_keyboard(kind: TokenKind, token: str) -> InlineKeyboardMarkup:
    accept, decline = ACTION_LABELS[kind]
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton(accept, callback_data=f"{kind.value}:yes:{token}"),
                InlineKeyboardButton(decline, callback_data=f"{kind.value}:no:{token}"),
            ]
        ]
    )


class TelegramGateway(MessageGateway):
    def __init__(self, bot) -> None:
        self.bot = bot

    async def _send(self, chat_id: int, text: str, **kwargs) -> None:
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, **kwargs)
        except TelegramError as exc:
            raise DeliveryError(str(exc)) from exc

    async def reply_confirmation(self, context: ReplyContext, pending: PendingTransaction) -> None:
        await self._send(
            context.chat_id,
            confirmation_text(pending),
            reply_to_message_id=context.message_id,
            reply_markup=_confirmation_keyboard(TokenKind.EXPENSE, pending.token),
        )

    async def push_confirmation(self, owner_id: str, pending: PendingTransaction) -> None:
        await self._send(
            int(owner_id),
            confirmation_text(pending),
            reply_markup=_confirmation_keyboard(TokenKind.EXPENSE, pending.token),
        )

    async def reply_text(self, context: ReplyContext, text: str) -> None:
        await self._send(context.chat_id, text, reply_to_message_id=context.message_id)

    async def push_text(self, owner_id: str, text: str) -> None:
        await self._send(int(owner_id), text)


class TelegramImageSource(ImageSource):
    def __init__(self, bot) -> None:
        self.bot = bot

    async def fetch(self, image_ref: ImageRef) -> bytes:
        try:
            file = await self.bot.get_file(image_ref.file_id)
            return bytes(await file.download_as_bytearray())
        except TelegramError as exc:
            raise ImageFetchError(f"Could not download {image_ref.file_id}: {exc}") from exc


def _pipeline(context: ContextTypes.DEFAULT_TYPE) -> ReceiptPipeline:
    return context.application.bot_data[PIPELINE_KEY]


def _ledger(context: ContextTypes.DEFAULT_TYPE) -> SqlLedger:
    return context.application.bot_data[LEDGER_KEY]


def _display_name(user) -> str:
    parts = [part for part in (user.first_name, user.last_name) if part]
    return " ".join(parts) or user.username or f"tg_{user.id}"


async def _ensure_owner(update: Update, context: ContextTypes.DEFAULT_TYPE) -> tuple[str, bool]:
    user = update.effective_user
    if user is None:
        raise ValueError("Received update without telegram user attached.")
    owner_id = str(user.id)
    created = await _ledger(context).ensure_owner(owner_id, _display_name(user))
    return owner_id, created


def _parse_amount(raw: str) -> Decimal | None:
    try:
        value = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None
    return value if value > 0 else None


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    _, created = await _ensure_owner(update, context)
    welcome = "🎉 Welcome back! Send a receipt photo or an amount like `lunch 1200`."
    if created:
        welcome = (
            "👋 Hello and welcome! I've set up your expense book. "
            "Send a receipt photo or an amount like `lunch 1200` to get started."
        )
    await update.message.reply_text(
        welcome + "\n\nCommands: /budget, /recent, /delete, /edit, /reset, /help",
        parse_mode=ParseMode.MARKDOWN,
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "📌 Tips:\n"
        "• Drop a receipt photo and I'll read the total for you\n"
        "• Or send an amount like `coffee 450` or `$12.50 taxi`\n"
        "• Reply `yes` / `no` to confirm or discard\n"
        "• /budget shows this month, `/budget 80000` sets your budget\n"
        "• /recent lists your last entries\n"
        "• `/delete <id>`, `/edit <id> <amount>` and /reset change your history",
        parse_mode=ParseMode.MARKDOWN,
    )


async def recent_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    owner_id, _ = await _ensure_owner(update, context)
    transactions = await _ledger(context).recent_transactions(owner_id, limit=5)
    if not transactions:
        await update.message.reply_text("No transactions yet. Send one now!")
        return
    lines = [
        f"#{tx.id} {tx.created_at:%Y-%m-%d} • {format_amount(tx.amount, tx.currency)} – {tx.description or ''}"
        for tx in transactions
    ]
    await update.message.reply_text("📝 Last entries:\n" + "\n".join(lines))


async def budget_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    owner_id, _ = await _ensure_owner(update, context)
    ledger = _ledger(context)
    if context.args:
        amount = _parse_amount(context.args[0])
        if amount is None:
            await update.message.reply_text("Usage: /budget <amount>")
            return
        await ledger.set_monthly_budget(owner_id, amount)
    status = await ledger.budget_status(owner_id)
    lines = [f"💰 Spent this month: {format_amount(status.spent, status.currency)}"]
    if status.monthly_budget is not None:
        lines.append(f"Budget: {format_amount(status.monthly_budget, status.currency)}")
        lines.append(f"Remaining: {format_amount(status.remaining, status.currency)}")
    else:
        lines.append("No monthly budget set. Use `/budget <amount>`.")
    await update.message.reply_text("\n".join(lines), parse_mode=ParseMode.MARKDOWN)


async def delete_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    owner_id, _ = await _ensure_owner(update, context)
    if len(context.args or []) != 1 or not context.args[0].isdigit():
        await update.message.reply_text("Usage: /delete <transaction id>")
        return
    transaction_id = int(context.args[0])
    token = _pipeline(context).issue_action_token(
        TokenKind.DELETE, owner_id, DeleteRequest(transaction_id)
    )
    await update.message.reply_text(
        f"Delete transaction #{transaction_id}?",
        reply_markup=_confirmation_keyboard(TokenKind.DELETE, token),
    )


async def edit_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    owner_id, _ = await _ensure_owner(update, context)
    args = context.args or []
    amount = _parse_amount(args[1]) if len(args) == 2 else None
    if amount is None or not args[0].isdigit():
        await update.message.reply_text("Usage: /edit <transaction id> <new amount>")
        return
    transaction_id = int(args[0])
    pipeline = _pipeline(context)
    token = pipeline.issue_action_token(TokenKind.EDIT, owner_id, EditRequest(transaction_id, amount))
    await update.message.reply_text(
        f"Change transaction #{transaction_id} to {format_amount(amount, pipeline.coordinator.home_currency.code)}?",
        reply_markup=_confirmation_keyboard(TokenKind.EDIT, token),
    )


async def reset_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    owner_id, _ = await _ensure_owner(update, context)
    token = _pipeline(context).issue_action_token(TokenKind.RESET, owner_id, ResetRequest())
    await update.message.reply_text(
        "⚠️ Reset your budget? This removes every recorded transaction.",
        reply_markup=_confirmation_keyboard(TokenKind.RESET, token),
    )


async def handle_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    owner_id, _ = await _ensure_owner(update, context)
    message = update.message
    photo = message.photo[-1]
    image_ref = ImageRef(message_id=f"{message.chat_id}:{message.message_id}", file_id=photo.file_id)
    reply_context = ReplyContext(chat_id=message.chat_id, message_id=message.message_id)

    await context.bot.send_chat_action(chat_id=message.chat_id, action=ChatAction.TYPING)
    try:
        report = await _pipeline(context).process_receipt_with_deadline(owner_id, image_ref, reply_context)
    except ExpenseBotError as exc:
        logger.error("Error processing photo from %s: %s", owner_id, exc)
        await message.reply_text(
            "❌ Failed to process the image. Please try again or send the amount as text."
        )
        return
    if report.status is ProcessingStatus.DUPLICATE:
        logger.info("Ignored duplicate photo %s", image_ref.message_id)


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    text = (update.message.text or "").strip()
    trimmed = text.lower()
    owner_id, _ = await _ensure_owner(update, context)
    pipeline = _pipeline(context)

    if trimmed in YES_WORDS or trimmed in NO_WORDS:
        outcome = await pipeline.confirm_pending(owner_id, None, accepted=trimmed in YES_WORDS)
        await update.message.reply_text(outcome.message)
        return
    if trimmed in RESET_WORDS:
        await reset_command(update, context)
        return

    entry = parse_manual_entry(text, pipeline.parser.extractor)
    if entry is None:
        await update.message.reply_text(
            "I couldn't find an amount there. Send something like `lunch 1200`.",
            parse_mode=ParseMode.MARKDOWN,
        )
        return
    candidate, description = entry
    reply_context = ReplyContext(chat_id=update.message.chat_id, message_id=update.message.message_id)
    try:
        await pipeline.offer_manual_expense(
            owner_id, candidate.amount, candidate.currency.code, description, reply_context
        )
    except ExpenseBotError as exc:
        logger.error("Could not offer manual expense for %s: %s", owner_id, exc)
        await update.message.reply_text("❌ Something went wrong, please try again.")


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()

    owner_id, _ = await _ensure_owner(update, context)
    pipeline = _pipeline(context)
    kind, _, rest = (query.data or "").partition(":")
    answer, _, token = rest.partition(":")

    try:
        if kind == TokenKind.EXPENSE.value:
            outcome = await pipeline.confirm_pending(owner_id, token, accepted=answer == "yes")
        else:
            outcome = await pipeline.apply_action(kind, token, owner_id, accepted=answer == "yes")
    except PayloadError as exc:
        logger.error("Malformed callback %r from %s: %s", query.data, owner_id, exc)
        await query.edit_message_text("This button is no longer valid.")
        return
    await query.edit_message_text(outcome.message)


def build_application(token: str | None) -> Application:
    if not token:
        raise RuntimeError("TELEGRAM_BOT is missing from configuration.")

    application = ApplicationBuilder().token(token).build()

    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("recent", recent_command))
    application.add_handler(CommandHandler("budget", budget_command))
    application.add_handler(CommandHandler("delete", delete_command))
    application.add_handler(CommandHandler("edit", edit_command))
    application.add_handler(CommandHandler("reset", reset_command))
    application.add_handler(CallbackQueryHandler(handle_callback))
    application.add_handler(MessageHandler(filters.PHOTO, handle_photo))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
    return application


def attach_pipeline(application: Application, pipeline: ReceiptPipeline, ledger: SqlLedger) -> None:
    application.bot_data[PIPELINE_KEY] = pipeline
    application.bot_data[LEDGER_KEY] = ledger
