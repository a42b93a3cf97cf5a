from shared.schemas import ErrorDetail, ErrorResponse


class GatewayError(Exception):
    def __init__(
        self,
        status_code: int,
        message: str,
        code: str,
        err_type: str,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.err_type = err_type

    def to_payload(self) -> dict:
        detail = ErrorDetail(message=self.message, type=self.err_type, code=self.code)
        return ErrorResponse(error=detail).model_dump()


class UnsupportedModelError(GatewayError):
    def __init__(self, model: str, code: str = "unsupported_model") -> None:
        super().__init__(
            status_code=400,
            message=f"Unsupported model: {model}",
            code=code,
            err_type="invalid_request_error",
        )
        self.model = model


class UnknownRoleError(GatewayError):
    def __init__(self, role: str) -> None:
        super().__init__(
            status_code=400,
            message=f"unknown role: {role}",
            code="unknown_role",
            err_type="invalid_request_error",
        )
        self.role = role


class BackendInvocationError(GatewayError):
    def __init__(self, message: str, code: str = "backend_error") -> None:
        super().__init__(
            status_code=502,
            message=message,
            code=code,
            err_type="upstream_error",
        )


class MalformedBackendFrameError(GatewayError):
    def __init__(self, message: str) -> None:
        super().__init__(
            status_code=502,
            message=message,
            code="malformed_backend_frame",
            err_type="upstream_error",
        )
