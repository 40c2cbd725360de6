# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KUBELOOP_", env_file=".env", extra="ignore")

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Reconciler engine
    worker_count: int = Field(default=4, ge=1)
    max_retries: int = Field(default=5, ge=0)
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 300.0
    resync_seconds: float = 300.0

    # Intent execution
    intent_timeout_seconds: float = 10.0
    intent_workers: int = Field(default=8, ge=1)
    intent_history_size: int = Field(default=1000, ge=1)

    # Watch bus
    watch_queue_size: int = Field(default=1024, ge=1)

    # Status aggregation
    status_debounce_seconds: float = 0.1

    # Scheduling
    unschedulable_retry_seconds: float = 30.0
    prefer_no_schedule_penalty: int = 10

    # Horizontal pod autoscaler
    hpa_sync_seconds: float = 15.0
    hpa_tolerance: float = 0.1


settings = Config()


def setup_logging(level: str = None):
    """Configure root logging for the entrypoints (HTTP app, CLI)"""
    logging.basicConfig(level=(level or settings.log_level).upper(), format=settings.log_format)
