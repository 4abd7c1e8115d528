# voteguard/security/input_validator.py

import re
import html
import bleach

from voteguard.errors import ValidationError

# Input validation and sanitization for every value that reaches the voting core.


class InputValidator:
    def __init__(self):
        self.allowed_html_tags = []
        self.allowed_html_attributes = {}

        self.patterns = {
            'identifier': re.compile(r'^[A-Za-z0-9_\-]{1,64}$'),
            'secret_code': re.compile(r'^[A-Z]{2}[0-9]{4}$'),
            'xss_script': re.compile(r'<script[^>]*>.*?</script>', re.IGNORECASE | re.DOTALL),
            'xss_event': re.compile(r'\bon\w+\s*=', re.IGNORECASE)
        }

    def sanitize_string(self, input_str, max_length=255):
        if not isinstance(input_str, str):
            raise ValidationError("Input must be a string")
        if len(input_str) > max_length:
            input_str = input_str[:max_length]

        sanitized = re.sub(self.patterns['xss_script'], '', input_str)
        sanitized = re.sub(self.patterns['xss_event'], '', sanitized)
        sanitized = bleach.clean(sanitized, tags=self.allowed_html_tags,
                                 attributes=self.allowed_html_attributes, strip=True)
        return html.unescape(sanitized).strip()

    def validate_identifier(self, value, field='id'):
        if not isinstance(value, str) or not self.patterns['identifier'].match(value):
            raise ValidationError(f"Invalid {field}", field=field)
        return value

    def normalize_code(self, code):
        if not isinstance(code, str):
            raise ValidationError("Secret code must be a string", field='secret_code')
        normalized = code.strip().upper()
        if not self.patterns['secret_code'].match(normalized):
            raise ValidationError("Secret code must be 2 letters followed by 4 digits", field='secret_code')
        return normalized

    def validate_reason(self, reason, field='reason', required=True, max_length=255):
        if reason is None or (isinstance(reason, str) and not reason.strip()):
            if required:
                raise ValidationError(f"Missing required field: {field}", field=field)
            return None
        cleaned = self.sanitize_string(reason, max_length=max_length)
        if required and not cleaned:
            raise ValidationError(f"Missing required field: {field}", field=field)
        return cleaned or None

    def validate_ballot(self, candidate_id, is_abstention=False, abstention_reason=None):
        """
        Check the candidate/abstention combination of a ballot.

        Returns:
            tuple: (candidate_id or None, abstention_reason or None)
        """
        if is_abstention:
            if candidate_id is not None:
                raise ValidationError("An abstention cannot name a candidate", field='candidate_id')
            reason = self.validate_reason(abstention_reason, field='abstention_reason')
            return None, reason
        if candidate_id is None:
            raise ValidationError("candidate_id is required unless abstaining", field='candidate_id')
        return self.validate_identifier(candidate_id, field='candidate_id'), None

    def validate_vote_request(self, payload):
        if not isinstance(payload, dict):
            raise ValidationError("Vote request must be a JSON object")

        for field in ('voter_id', 'position_id', 'secret_code'):
            if field not in payload:
                raise ValidationError(f"Missing required vote field: {field}", field=field)

        is_abstention = payload.get('is_abstention', False)
        if not isinstance(is_abstention, bool):
            raise ValidationError("is_abstention must be true or false", field='is_abstention')
        candidate_id, reason = self.validate_ballot(payload.get('candidate_id'), is_abstention,
                                                    payload.get('abstention_reason'))
        return {
            'voter_id': self.validate_identifier(payload['voter_id'], field='voter_id'),
            'position_id': self.validate_identifier(payload['position_id'], field='position_id'),
            'candidate_id': candidate_id,
            'secret_code': self.normalize_code(payload['secret_code']),
            'is_abstention': is_abstention,
            'abstention_reason': reason,
        }
