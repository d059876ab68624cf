class ChaosException(Exception):
    """Raised when the chaos layer injects a failure into a sandbox call."""

    def __init__(self, message: str, context: str = None):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        return f"ChaosException: {self.message}"
