class SopsOperatorError(Exception):
    """
    Base class for errors raised by the SOPS operator. The message of the error is what ends up in the `reason` of
    the SopsSecret status and in the warning event.
    """
