from comforeve.schemas import OrderLine


def line(ticket_type_id, email, *, quantity=1, name="Ada Obi", phone=None):
    return OrderLine(
        ticket_type_id=ticket_type_id,
        quantity=quantity,
        attendee_name=name,
        attendee_email=email,
        attendee_phone=phone,
    )


WEBHOOK_SECRET = "sk_test_webhook_secret"
ADMIN_TOKEN = "admin-token"
