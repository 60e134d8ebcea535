# Receipt Builder - renders a TillSync transaction as ESC/POS bytes
# Layout for 58mm printers (32 columns at font A)

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from .escpos_encoder import Alignment, ESCPOSEncoder
from .models import DEFAULT_TENDER, STATUS_HELD, Transaction


@dataclass
class ReceiptSettings:
    store_name: str = 'TillSync Store'
    store_phone: str = ''
    email: str = ''
    website: str = ''
    tax_number: str = ''
    refund_days: int = 0
    qr_url: str = ''
    qr_description: str = 'Scan and leave feedback'
    currency: str = 'N'
    width: int = 32
    encoding: str = 'cp1252'

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ReceiptSettings':
        return cls(
            store_name=config.get('store_name') or cls.store_name,
            store_phone=config.get('store_phone', ''),
            email=config.get('store_email', ''),
            website=config.get('store_website', ''),
            tax_number=config.get('tax_number', ''),
            refund_days=int(config.get('refund_days') or 0),
            qr_url=config.get('receipt_qr_url', ''),
            qr_description=config.get('receipt_qr_description') or cls.qr_description,
            currency=config.get('currency_symbol', cls.currency),
            width=int(config.get('receipt_width') or cls.width),
            encoding=config.get('receipt_encoding') or cls.encoding,
        )


def format_money(amount: Optional[float], currency: str = 'N') -> str:
    return f"{currency}{(amount or 0):,.2f}"


def _format_timestamp(value: Optional[str]) -> str:
    if not value:
        return datetime.now().strftime('%d/%m/%Y %H:%M:%S')
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00')).strftime('%d/%m/%Y %H:%M:%S')
    except ValueError:
        return value


def _two_column(label: str, value: str, width: int) -> str:
    # Label is truncated so at least one space separates it from the value
    room = max(width - len(value), 1)
    return f"{label[:room - 1]:<{room}}{value}"


def build_receipt(transaction: Union[Transaction, Dict[str, Any]],
                  settings: Optional[ReceiptSettings] = None) -> bytes:
    """Render a sale receipt and return the printer byte stream (ending in a partial cut)."""
    if isinstance(transaction, dict):
        transaction = Transaction.from_dict(transaction)
    settings = settings or ReceiptSettings()
    width = settings.width
    cur = settings.currency
    tx = transaction

    printer = ESCPOSEncoder(encoding=settings.encoding)
    printer.initialize()

    # Header
    printer.set_size(1, 2).set_alignment(Alignment.CENTER).set_bold(True)
    printer.text(settings.store_name)
    printer.set_size(1, 1).set_bold(False)
    printer.text(tx.location)
    if settings.store_phone:
        printer.text(f"Tel: {settings.store_phone}")
    if settings.email:
        printer.text(settings.email)
    if settings.website:
        printer.text(settings.website)
    if settings.tax_number:
        printer.text(f"Tax ID: {settings.tax_number}")
    printer.separator('-', width)

    # Receipt details
    printer.set_alignment(Alignment.LEFT)
    printer.text('Receipt of Purchase (Inc Tax)')
    reference = (tx.id or tx.external_id or '')[:8].upper()
    printer.text(_two_column(_format_timestamp(tx.created_at), reference, width))
    printer.text(f"Staff: {tx.staff_name}")
    printer.separator('-', width)

    # Items
    name_width = width - 12
    printer.set_bold(True)
    printer.text(f"{'PRODUCT':<{name_width}}{'QTY':>3}{'PRICE':>9}")
    printer.set_bold(False)
    for item in tx.items:
        printer.text(
            f"{item.name[:name_width]:<{name_width}}"
            f"{item.quantity:>3}"
            f"{format_money(item.line_total, ''):>9}"
        )
    total_items = sum(item.quantity for item in tx.items)
    printer.text(f"Total Items: {total_items}".rjust(width))
    printer.separator('-', width)

    # Totals
    printer.text(_two_column('Subtotal:', format_money(tx.subtotal, cur), width))
    if tx.tax > 0:
        printer.text(_two_column('Tax:', format_money(tx.tax, cur), width))
    if tx.discount > 0:
        printer.text(_two_column('Discount:', '-' + format_money(tx.discount, cur), width))
    printer.set_bold(True)
    printer.text(_two_column('TOTAL:', format_money(tx.total, cur), width))
    printer.set_bold(False)

    # Payment
    printer.set_bold(True)
    printer.text('PAYMENT BY TENDER')
    printer.set_bold(False)
    components = tx.payment_components() or [(DEFAULT_TENDER, tx.total or 0)]
    for tender_name, amount in components:
        printer.text(_two_column(tender_name, format_money(amount, cur), width))
    if tx.change > 0:
        printer.set_bold(True)
        printer.text(_two_column('CHANGE', format_money(tx.change, cur), width))
        printer.set_bold(False)

    # Footer
    printer.new_line()
    printer.set_alignment(Alignment.CENTER).set_bold(True)
    printer.text('THANK YOU!')
    printer.set_bold(False)
    if settings.refund_days > 0:
        printer.text(f"Refund within {settings.refund_days} days with receipt")
    printer.set_bold(True)
    printer.text('UNPAID' if tx.status == STATUS_HELD else 'PAID')
    printer.set_bold(False)

    if settings.qr_url:
        printer.new_line()
        if settings.qr_description:
            printer.text(settings.qr_description)
        printer.qr_code(settings.qr_url, 3)

    printer.new_line()
    printer.text('Thank you for shopping with us!')
    printer.new_line(3)
    printer.partial_cut()

    return printer.serialize()
