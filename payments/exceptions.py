class PaymentError(Exception):
    pass


class PaymentAlreadyFinal(PaymentError):
    def __init__(self, payment):
        self.payment = payment
        super().__init__(f"Payment {payment.pk} is already {payment.status}.")


class ProviderCommunicationFailure(PaymentError):
    pass


class WebhookVerificationError(PaymentError):
    pass
