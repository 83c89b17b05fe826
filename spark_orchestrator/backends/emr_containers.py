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


# Node-pool profiles shipped with the containerized runtime: each one routes the
# driver and executor pods to a dedicated pod template.
JOB_PROFILES = ("critical", "shared", "notebook")


def profile_spark_defaults(profile: str, pod_template_location: str) -> dict[str, str]:
    if profile not in JOB_PROFILES:
        raise SubmissionError(f"Unknown job profile {profile!r} (expected one of {JOB_PROFILES})", code="ValidationException")
    base = pod_template_location.rstrip("/")
    return {
        "spark.kubernetes.driver.podTemplateFile": f"{base}/{profile}-driver.yaml",
        "spark.kubernetes.executor.podTemplateFile": f"{base}/{profile}-executor.yaml",
    }


class EmrContainersBackend(JobBackend):
    """Adapter for the containerized batch engine (`emr-containers` API).

    Tokens are `<virtualClusterId>/<jobRunId>`. Recognized submission params:
    `virtual_cluster_id`, `release_label`, `profile` (critical|shared|notebook),
    `spark_submit_parameters`, `application_configuration` (list of
    classification blocks), `job_template_id`.
    """

    kind = "emr_containers"

    def __init__(
        self,
        backend_id: str,
        *,
        virtual_cluster_id: str,
        release_label: str,
        pod_template_location: str | None = None,
        region: str | None = None,
        client_timeout_s: float = 60.0,
        client: Any = None,
    ) -> None:
        super().__init__(backend_id)
        self.virtual_cluster_id = virtual_cluster_id
        self.release_label = release_label
        self.pod_template_location = pod_template_location
        self._client = client or make_client("emr-containers", region=region, timeout_s=client_timeout_s)

    def _application_configuration(self, spec: JobSpecification) -> list[dict[str, Any]]:
        blocks = [dict(b) for b in (spec.submission_params.get("application_configuration") or [])]
        profile = str(spec.submission_params.get("profile") or "").strip()
        if not profile:
            return blocks
        if not self.pod_template_location:
            raise SubmissionError(
                f"Job profile {profile!r} requires pod_template_location on backend {self.backend_id!r}",
                code="ValidationException",
            )
        defaults = profile_spark_defaults(profile, self.pod_template_location)
        for block in blocks:
            if block.get("classification") == "spark-defaults":
                props = dict(block.get("properties") or {})
                block["properties"] = {**defaults, **props}
                return blocks
        blocks.insert(0, {"classification": "spark-defaults", "properties": defaults})
        return blocks

    def build_request(self, spec: JobSpecification, *, client_token: str) -> dict[str, Any]:
        params = spec.submission_params
        driver: dict[str, Any] = {"entryPoint": spec.entry_point}
        if spec.arguments:
            driver["entryPointArguments"] = list(spec.arguments)
        submit_params = spark_submit_parameters(spec)
        if submit_params:
            driver["sparkSubmitParameters"] = submit_params

        request: dict[str, Any] = {
            "virtualClusterId": str(params.get("virtual_cluster_id") or self.virtual_cluster_id),
            "clientToken": client_token,
            "name": spec.name,
            "executionRoleArn": spec.execution_role_arn,
            "releaseLabel": str(params.get("release_label") or self.release_label),
            "jobDriver": {"sparkSubmitJobDriver": driver},
        }
        if params.get("job_template_id"):
            request["jobTemplateId"] = str(params["job_template_id"])

        overrides: dict[str, Any] = {}
        app_config = self._application_configuration(spec)
        if app_config:
            overrides["applicationConfiguration"] = app_config
        monitoring = monitoring_configuration(spec.log_destinations)
        if monitoring:
            overrides["monitoringConfiguration"] = monitoring
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
        return f"{resp.get('virtualClusterId') or request['virtualClusterId']}/{resp['id']}"

    def describe(self, token: str) -> NativeStatus:
        from botocore.exceptions import BotoCoreError, ClientError

        virtual_cluster_id, job_run_id = split_token(token, backend_kind=self.kind)
        try:
            resp = self._client.describe_job_run(id=job_run_id, virtualClusterId=virtual_cluster_id)
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
            failure_reason=(str(job_run.get("failureReason") or "").strip() or None),
            message=(str(job_run.get("stateDetails") or "").strip() or None),
            raw={
                "state": job_run.get("state"),
                "failureReason": job_run.get("failureReason"),
                "stateDetails": job_run.get("stateDetails"),
            },
        )

    def cancel(self, token: str) -> None:
        virtual_cluster_id, job_run_id = split_token(token, backend_kind=self.kind)
        best_effort(
            "emr-containers cancel_job_run",
            self._client.cancel_job_run,
            id=job_run_id,
            virtualClusterId=virtual_cluster_id,
        )
