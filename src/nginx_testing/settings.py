# Copyright 2026 BadCompany
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

"""Environment-driven defaults for the nginx runner."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class NginxTestingSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NGINX_TESTING_", env_file=".env", extra="ignore"
    )

    bin_path: str = "nginx"
    bind_address: str = "127.0.0.1"
    start_timeout: float = 1.0
    temp_dir: str | None = None
    health_check_path: str = "/health"
    log_poll_interval: float = 0.01
    # Window in which an exiting nginx is reported as a launch error
    process_error_grace: float = 0.05
    stop_timeout: float = 5.0
    version_timeout: float = 5.0


@lru_cache(maxsize=1)
def get_settings() -> NginxTestingSettings:
    return NginxTestingSettings()
