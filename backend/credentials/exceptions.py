class CredentialPipelineError(Exception):
    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class CredentialRenderError(CredentialPipelineError):
    pass


class QRCodeCollisionError(CredentialPipelineError):
    pass


class PrintBatchError(CredentialPipelineError):
    pass


class InvalidBatchFilters(PrintBatchError):
    def __init__(self, detail: str, *, field: str = ""):
        super().__init__(detail)
        self.field = field
