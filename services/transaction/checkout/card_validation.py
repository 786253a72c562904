"""
Transaction Service — カード入力の検証

フレームワークに依存しない純粋関数。各述語を組み合わせ、
validate_card はエラーメッセージのリストを返す(空なら有効)。
"""

import re
from datetime import date

from .models import CardDetails

_DIGITS = re.compile(r"^\d+$")


def normalize_number(number: str) -> str:
    return re.sub(r"[\s-]", "", number or "")


def luhn_valid(number: str) -> bool:
    if not _DIGITS.match(number) or not 12 <= len(number) <= 19:
        return False
    checksum = 0
    for i, ch in enumerate(reversed(number)):
        digit = int(ch)
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        checksum += digit
    return checksum % 10 == 0


def card_brand(number: str) -> str | None:
    """VISA / MASTERCARD を判定する。それ以外は None。"""
    if number.startswith("4") and len(number) in (13, 16, 19):
        return "VISA"
    if len(number) == 16:
        prefix2 = int(number[:2])
        prefix4 = int(number[:4])
        if 51 <= prefix2 <= 55 or 2221 <= prefix4 <= 2720:
            return "MASTERCARD"
    return None


def cvc_valid(cvc: str) -> bool:
    return bool(re.fullmatch(r"\d{3,4}", cvc or ""))


def exp_month_valid(month: str) -> bool:
    return bool(re.fullmatch(r"0[1-9]|1[0-2]", month or ""))


def exp_year_valid(year: str) -> bool:
    return bool(re.fullmatch(r"\d{2}", year or ""))


def not_expired(month: str, year: str, today: date) -> bool:
    """カードは有効期限月の末日まで使える。"""
    full_year = 2000 + int(year)
    if full_year != today.year:
        return full_year > today.year
    return int(month) >= today.month


def normalize_card(card: CardDetails) -> CardDetails:
    return CardDetails(
        number=normalize_number(card.number),
        cvc=(card.cvc or "").strip(),
        exp_month=(card.exp_month or "").strip().zfill(2),
        exp_year=(card.exp_year or "").strip(),
        card_holder=(card.card_holder or "").strip().upper(),
    )


def validate_card(card: CardDetails, today: date | None = None) -> list[str]:
    """
    すべての検証を実行してメッセージを集める。

    引数は normalize_card 済みであること。
    """
    today = today or date.today()
    errors: list[str] = []

    if not luhn_valid(card.number):
        errors.append("Invalid card number")
    elif card_brand(card.number) is None:
        errors.append("Only Visa or Mastercard cards are accepted")

    if not cvc_valid(card.cvc):
        errors.append("Invalid CVC (must be 3 or 4 digits)")

    month_ok = exp_month_valid(card.exp_month)
    year_ok = exp_year_valid(card.exp_year)
    if not month_ok:
        errors.append("Invalid expiration month (01-12)")
    if not year_ok:
        errors.append("Invalid expiration year (YY)")
    if month_ok and year_ok and not not_expired(card.exp_month, card.exp_year, today):
        errors.append("Card is expired")

    if not card.card_holder:
        errors.append("Card holder is required")
    elif len(card.card_holder) > 100:
        errors.append("Card holder cannot exceed 100 characters")

    return errors
