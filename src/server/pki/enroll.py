"""
签发编排：提交 CSR，轮询直到 CA 签发完成或失败。

状态: built -> submitted -> polling -> issued | failed
只有拉取阶段的 pending / timeout 会重试，其余错误一律终止并原样上抛。
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable

from loguru import logger

from .ca_client import CAClient, IssuedCertificateSet
from .csr import SigningRequest
from .errors import (
    CARetrievalError,
    CASubmissionError,
    CertificatePendingError,
    CertificateRetrieveTimeoutError,
)

DEFAULT_POLL_INTERVAL = 5.0


class EnrollmentState(str, Enum):
    BUILT = "built"
    SUBMITTED = "submitted"
    POLLING = "polling"
    ISSUED = "issued"
    FAILED = "failed"


class Enrollment:
    """
    单次签发尝试。每个 Enrollment 只能 run 一次，CSR 只提交一次。

    max_attempts / deadline 为空时轮询不设上限（等待时间完全由 CA 决定）。
    """

    def __init__(
        self,
        client: CAClient,
        request: SigningRequest,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int | None = None,
        deadline: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.request = request
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.deadline = deadline
        self._sleep = sleep
        self._clock = clock
        self.state = EnrollmentState.BUILT
        self.pickup_id: str | None = None
        self.retries = 0

    def run(self) -> IssuedCertificateSet:
        if self.state is not EnrollmentState.BUILT:
            raise RuntimeError(f"签发流程已执行过 (state={self.state.value})")
        try:
            self._submit()
            result = self._poll()
        except Exception:
            self.state = EnrollmentState.FAILED
            raise
        self.state = EnrollmentState.ISSUED
        return result

    def _submit(self) -> None:
        logger.info(f"提交证书请求: cn={self.request.common_name}")
        try:
            self.pickup_id = self.client.submit(self.request)
        except CASubmissionError:
            raise
        except Exception as e:
            raise CASubmissionError(str(e)) from e
        self.state = EnrollmentState.SUBMITTED
        logger.info(f"CA 已受理 {self.request.common_name}，pickup_id={self.pickup_id}")

    def _poll(self) -> IssuedCertificateSet:
        assert self.pickup_id is not None
        self.state = EnrollmentState.POLLING
        started = self._clock()
        while True:
            try:
                issued = self.client.retrieve(self.pickup_id)
            except (CertificatePendingError, CertificateRetrieveTimeoutError) as e:
                self._check_budget(started, e)
                logger.info(
                    f"证书 {self.request.common_name} 签发中 (pickup_id={self.pickup_id}, "
                    f"第 {self.retries + 1} 次重试): {e}"
                )
                self.retries += 1
                self._sleep(self.poll_interval)
                continue
            except CARetrievalError:
                raise
            except Exception as e:
                raise CARetrievalError(str(e)) from e

            logger.info(
                f"成功获取证书: cn={self.request.common_name}, san={list(self.request.dns_names)}"
            )
            return issued

    def _check_budget(self, started: float, cause: Exception) -> None:
        if self.max_attempts is not None and self.retries >= self.max_attempts:
            self._abandon()
            raise CARetrievalError(
                f"证书 {self.pickup_id} 在 {self.retries} 次重试后仍未签发: {cause}"
            ) from cause
        if self.deadline is not None and self._clock() - started >= self.deadline:
            self._abandon()
            raise CARetrievalError(
                f"证书 {self.pickup_id} 在 {self.deadline} 秒内未签发: {cause}"
            ) from cause

    def _abandon(self) -> None:
        """放弃等待时通知支持 cancel 的客户端释放该请求。"""
        cancel = getattr(self.client, "cancel", None)
        if cancel is None:
            return
        try:
            cancel(self.pickup_id)
        except Exception as e:
            # 取消失败不掩盖超限错误本身
            logger.warning(f"取消 pickup_id={self.pickup_id} 失败: {e}")


def enroll(
    client: CAClient,
    request: SigningRequest,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int | None = None,
    deadline: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> IssuedCertificateSet:
    """提交并等待签发完成的便捷封装。"""
    return Enrollment(
        client,
        request,
        poll_interval=poll_interval,
        max_attempts=max_attempts,
        deadline=deadline,
        sleep=sleep,
    ).run()
