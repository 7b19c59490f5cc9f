import re
from typing import Dict, Optional

# Same shape the sign-up form accepted: something@something.tld
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_PASSWORD_LENGTH = 6


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalisation and checksum checks for the add-book form."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9Xx]", "", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:9].isdigit() or not (s[9].isdigit() or s[9] == "X"):
                return False
            digits = [int(ch) for ch in s[:9]] + [10 if s[9] == "X" else int(s[9])]
            return sum((10 - i) * d for i, d in enumerate(digits)) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(s[:12]))
            return (10 - total % 10) % 10 == int(s[12])
        return False


class FormValidator:
    """Field checks shared by the login, register and library forms.

    Each ``validate_*`` returns a mapping of field name to error key; an empty
    mapping means the form is valid.
    """

    @staticmethod
    def is_email(value: Optional[str]) -> bool:
        return bool(value) and bool(_EMAIL_RE.match(value.strip()))

    @staticmethod
    def required(value: Optional[str]) -> bool:
        return value is not None and value.strip() != ""

    @staticmethod
    def validate_login(email: Optional[str], password: Optional[str]) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if not FormValidator.required(email):
            errors["email"] = "required"
        elif not FormValidator.is_email(email):
            errors["email"] = "email"
        if not FormValidator.required(password):
            errors["password"] = "required"
        return errors

    @staticmethod
    def validate_register(full_name: Optional[str], email: Optional[str],
                          password: Optional[str], confirm_password: Optional[str]) -> Dict[str, str]:
        errors = FormValidator.validate_login(email, password)
        if not FormValidator.required(full_name):
            errors["full_name"] = "required"
        if "password" not in errors and len(password) < MIN_PASSWORD_LENGTH:
            errors["password"] = "minlength"
        if not FormValidator.required(confirm_password):
            errors["confirm_password"] = "required"
        elif confirm_password != password:
            errors["confirm_password"] = "mustMatch"
        return errors

    @staticmethod
    def validate_library(name: Optional[str], address: Optional[str],
                         contact_email: Optional[str]) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if not FormValidator.required(name):
            errors["library_name"] = "required"
        if not FormValidator.required(address):
            errors["library_address"] = "required"
        if not FormValidator.required(contact_email):
            errors["contact_email"] = "required"
        elif not FormValidator.is_email(contact_email):
            errors["contact_email"] = "email"
        return errors
