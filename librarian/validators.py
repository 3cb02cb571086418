import re
from typing import Iterable, List, Optional


class TextValidator:
    """Required-field checks and light sanitization for form input."""

    @staticmethod
    def is_present(text: Optional[str]) -> bool:
        return text is not None and bool(str(text).strip())

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return TextValidator.is_present(title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        return TextValidator.is_present(author)

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        return TextValidator.is_present(name)

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # drop markup and collapse runs of whitespace
        cleaned = re.sub(r"<[^>]*>", "", str(text))
        return re.sub(r"\s+", " ", cleaned).strip()


class CategoryValidator:
    """Category rules: at least one entry once the strict rule is on."""

    @staticmethod
    def clean(categories: Optional[Iterable[str]]) -> List[str]:
        if categories is None:
            return []
        if isinstance(categories, str):
            categories = [categories]
        cleaned: List[str] = []
        for item in categories:
            text = TextValidator.sanitize_text(item)
            if text and text not in cleaned:
                cleaned.append(text)
        return cleaned

    @staticmethod
    def validate(categories: Optional[Iterable[str]], required: bool = True) -> bool:
        if not required:
            return True
        return bool(CategoryValidator.clean(categories))
