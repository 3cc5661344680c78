class ConfigurationError(ValueError):
    """Raised at synth time when a context value is missing or unusable."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key
