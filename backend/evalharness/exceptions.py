"""Error taxonomy for setup-level failures.

Question-level assistant failures are not in here; they live next to the
client in services/assistant.py and are absorbed into `fail` results.
"""


class EvalHarnessError(RuntimeError):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingCredentialError(EvalHarnessError):
    status_code = 401


class RunNotFoundError(EvalHarnessError):
    status_code = 404


class ResultNotFoundError(EvalHarnessError):
    status_code = 404


class RunInProgressError(EvalHarnessError):
    status_code = 409


class RunNotRunningError(EvalHarnessError):
    status_code = 409


class OffsetMismatchError(EvalHarnessError):
    status_code = 409


class NoActiveQuestionsError(EvalHarnessError):
    status_code = 422


class NoHallucinationsError(EvalHarnessError):
    status_code = 422


class UnknownRuleSetError(EvalHarnessError):
    pass
