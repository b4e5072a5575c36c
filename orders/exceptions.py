class OrderError(Exception):
    pass


class InvalidTransition(OrderError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change order status from '{current}' to '{requested}'."
        )


class PaymentNotAcceptable(OrderError):
    def __init__(self, order):
        self.order = order
        super().__init__(
            f"Order {order.order_number} cannot accept a payment "
            f"(payment status: {order.payment_status})."
        )


class PersistenceFailure(OrderError):
    pass
