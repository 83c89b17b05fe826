from __future__ import annotations

from typing import Any

from spark_orchestrator.backends.aws import (
    NOT_FOUND_ERROR_CODES,
    RETRYABLE_ERROR_CODES,
    best_effort,
    client_error_code,
    client_error_message,
    is_connection_error,
    make_client,
    monitoring_configuration,
    spark_submit_parameters,
)
from spark_orchestrator.backends.base import (
    BackendNotFoundError,
    JobBackend,
    SubmissionError,
    TransientDescribeError,
    split_token,
)
from spark_orchestrator.runtime.types import JobSpecification, NativeStatus


class EmrServerlessBackend(JobBackend):
    """Adapter for the serverless batch engine (`emr-serverless` API).

    Tokens are `<applicationId>/<jobRunId>`. Recognized submission params:
    `application_id` (overrides the configured application),
    `spark_submit_parameters`, `configuration_overrides`
    (`applicationConfiguration` list, merged as-is).
    """

    kind = "emr_serverless"

    def __init__(
        self,
        backend_id: str,
        *,
        application_id: str,
        region: str | None = None,
        client_timeout_s: float = 60.0,
        client: Any = None,
    ) -> None:
        super().__init__(backend_id)
        self.application_id = application_id
        self._client = client or make_client("emr-serverless", region=region, timeout_s=client_timeout_s)

    def build_request(self, spec: JobSpecification, *, client_token: str) -> dict[str, Any]:
        params = spec.submission_params
        spark_submit: dict[str, Any] = {"entryPoint": spec.entry_point}
        if spec.arguments:
            spark_submit["entryPointArguments"] = list(spec.arguments)
        submit_params = spark_submit_parameters(spec)
        if submit_params:
            spark_submit["sparkSubmitParameters"] = submit_params

        request: dict[str, Any] = {
            "applicationId": str(params.get("application_id") or self.application_id),
            "clientToken": client_token,
            "executionRoleArn": spec.execution_role_arn,
            "name": spec.name,
            "jobDriver": {"sparkSubmit": spark_submit},
            # Service-side timeout as a backstop; the orchestrator's own clock is authoritative.
            "executionTimeoutMinutes": max(1, int(-(-spec.execution_timeout_s // 60))),
        }

        overrides: dict[str, Any] = dict(params.get("configuration_overrides") or {})
        monitoring = monitoring_configuration(spec.log_destinations)
        if monitoring:
            overrides.setdefault("monitoringConfiguration", {}).update(monitoring)
        if overrides:
            request["configurationOverrides"] = overrides
        if spec.tags:
            request["tags"] = dict(spec.tags)
        return request

    def submit(self, spec: JobSpecification, *, client_token: str) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        request = self.build_request(spec, client_token=client_token)
        try:
            resp = self._client.start_job_run(**request)
        except ClientError as e:
            raise SubmissionError(client_error_message(e), code=client_error_code(e)) from e
        except BotoCoreError as e:
            raise SubmissionError(f"start_job_run failed: {e}", code=type(e).__name__) from e
        return f"{resp['applicationId']}/{resp['jobRunId']}"

    def describe(self, token: str) -> NativeStatus:
        from botocore.exceptions import BotoCoreError, ClientError

        application_id, job_run_id = split_token(token, backend_kind=self.kind)
        try:
            resp = self._client.get_job_run(applicationId=application_id, jobRunId=job_run_id)
        except ClientError as e:
            code = client_error_code(e)
            if code in NOT_FOUND_ERROR_CODES:
                raise BackendNotFoundError(client_error_message(e)) from e
            if code in RETRYABLE_ERROR_CODES:
                raise TransientDescribeError(f"{code}: {client_error_message(e)}") from e
            raise
        except BotoCoreError as e:
            if is_connection_error(e):
                raise TransientDescribeError(str(e)) from e
            raise

        job_run = resp.get("jobRun") or {}
        return NativeStatus(
            state=str(job_run.get("state") or ""),
            message=(str(job_run.get("stateDetails") or "").strip() or None),
            raw={
                "state": job_run.get("state"),
                "stateDetails": job_run.get("stateDetails"),
                "updatedAt": str(job_run.get("updatedAt") or ""),
            },
        )

    def cancel(self, token: str) -> None:
        application_id, job_run_id = split_token(token, backend_kind=self.kind)
        best_effort(
            "emr-serverless cancel_job_run",
            self._client.cancel_job_run,
            applicationId=application_id,
            jobRunId=job_run_id,
        )
