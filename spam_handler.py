from typing import Mapping, Optional
import re

HONEYPOT_FIELDS = ("website_url", "company_website", "url")

SUSPICIOUS_EMAIL_DOMAINS = (
    "tempmail.com",
    "10minutemail.com",
    "guerrillamail.com",
    "mailinator.com",
    "throwaway.email",
    "yopmail.com",
    "temp-mail.org",
)

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class SpamHandler:
    def __init__(self):
        self.spam_patterns = [
            re.compile(r"^[A-Za-z]{15,}$"),  # Long run of letters with no spaces
            re.compile(r"([A-Z][a-z]){8,}"),  # Alternating case
            re.compile(r"(.)\1{10,}"),  # Repeated characters
            re.compile(r"[a-zA-Z]{5,}[0-9]{3,}[a-zA-Z]{5,}"),  # Letters-digits-letters gibberish
            re.compile(r"^[A-Za-z]{10,20}$"),  # Short single-token messages
        ]
        self.randomness_threshold = 0.7
        self.min_spam_length = 15

    @staticmethod
    def randomness_ratio(text: str) -> float:
        """
        Distinct non-whitespace characters over total non-whitespace characters.
        Characters are compared case-insensitively.
        """
        compact = re.sub(r"\s", "", text)
        if not compact:
            return 0.0
        return len(set(compact.lower())) / len(compact)

    def is_spam(self, text: Optional[str]) -> bool:
        """
        Check if a free-text field looks like machine-generated gibberish.
        A pattern match alone is not enough; the text must also be long and
        have a high randomness ratio.
        """
        if not text or not isinstance(text, str):
            return False

        for pattern in self.spam_patterns:
            if pattern.search(text):
                if (
                    self.randomness_ratio(text) > self.randomness_threshold
                    and len(text) > self.min_spam_length
                ):
                    return True
        return False

    def first_spam_field(self, **fields: Optional[str]) -> Optional[str]:
        """Return the name of the first field classified as spam, if any."""
        for field_name, value in fields.items():
            if self.is_spam(value):
                return field_name
        return None

    @staticmethod
    def honeypot_value(form: Mapping[str, Optional[str]]) -> Optional[str]:
        """Return the first non-blank decoy field value, if any."""
        for field_name in HONEYPOT_FIELDS:
            value = form.get(field_name)
            if value and value.strip():
                return value
        return None

    @staticmethod
    def is_valid_email_domain(email: Optional[str]) -> bool:
        if not email or not isinstance(email, str):
            return False
        if not EMAIL_REGEX.match(email):
            return False

        domain = email.split("@", 1)[1].lower()
        if any(suspicious in domain for suspicious in SUSPICIOUS_EMAIL_DOMAINS):
            return False

        # Random-looking main domain label
        main_domain = domain.split(".")[0]
        if re.match(r"^[A-Za-z]{15,}$", main_domain):
            return False

        return True


# Create a global instance
spam_handler = SpamHandler()
