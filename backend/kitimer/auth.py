from flask import current_app


def can_control(user, project_code: str) -> bool:
    """Whether ``user`` may mutate the timer for ``project_code``.

    Any signed-in facilitator controls every code.  When
    FACILITATOR_EMAIL_DOMAIN is configured, the account's email must also
    belong to that domain.
    """
    if user is None or not getattr(user, 'is_authenticated', False):
        return False
    if not getattr(user, 'is_facilitator', False):
        return False
    domain = (current_app.config.get('FACILITATOR_EMAIL_DOMAIN') or '').lower()
    if domain:
        email = (getattr(user, 'email', None) or '').lower()
        return email.endswith(domain)
    return True
