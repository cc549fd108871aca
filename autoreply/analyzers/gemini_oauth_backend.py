"""
Gemini CLI OAuth 补全后端
Gemini CLI OAuth Completion Backend

读取 Gemini CLI 登录后保存的 OAuth 凭证（默认 ~/.gemini/oauth_creds.json），
通过 Code Assist REST API 调用 Gemini 模型。

凭证以 OAuthCredentials 显式保存：每 30 秒重新读取凭证文件，
access token 在过期前 5 分钟使用 refresh token 刷新并写回文件。
"""

import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import requests

from autoreply.analyzers.base import LLMBackend
from autoreply.qa.config import GeneratorConfig
from autoreply.qa.exceptions import GeneratorError

# 配置日志
logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
CODE_ASSIST_ENDPOINT = "https://cloudcode-pa.googleapis.com/v1internal"
DEFAULT_PROJECT_ID = "gemini-cli-prod"

RELOAD_INTERVAL = timedelta(seconds=30)
REFRESH_MARGIN = timedelta(minutes=5)


class OAuthCredentials:
    """
    OAuth 凭证

    Attributes:
        path: 凭证文件路径
        access_token: 当前 access token
        refresh_token: refresh token
        expires_at: access token 过期时间
        last_refreshed: 最近一次从文件读取或刷新的时间
    """

    def __init__(
        self,
        path: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0
    ):
        self.path = Path(os.path.expanduser(path))
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

        self.access_token: str | None = None
        self.refresh_token: str | None = None
        self.expires_at: datetime | None = None
        self.last_refreshed: datetime | None = None

    def _load(self, now: datetime) -> None:
        """从凭证文件读取，文件不存在或格式错误时清空"""
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Cannot read Gemini credentials {self.path}: {e}")
            data = {}

        self.access_token = data.get('access_token')
        self.refresh_token = data.get('refresh_token')
        expiry_ms = data.get('expiry_date')
        self.expires_at = datetime.fromtimestamp(expiry_ms / 1000) if expiry_ms else None
        self.last_refreshed = now

    def _save(self) -> None:
        """将刷新后的 token 写回凭证文件"""
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            data = {}

        data['access_token'] = self.access_token
        if self.expires_at:
            data['expiry_date'] = int(self.expires_at.timestamp() * 1000)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.chmod(self.path, 0o600)
        except OSError as e:
            logger.warning(f"Failed to persist refreshed Gemini credentials: {e}")

    def _refresh(self, now: datetime) -> None:
        """使用 refresh token 换取新的 access token"""
        try:
            response = requests.post(
                TOKEN_URL,
                data={
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                    'refresh_token': self.refresh_token,
                    'grant_type': 'refresh_token',
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GeneratorError(f"Failed to refresh Gemini access token: {e}") from e

        if response.status_code != 200:
            raise GeneratorError(
                f"Failed to refresh Gemini access token: HTTP {response.status_code} "
                f"{response.text[:200]}"
            )

        payload = response.json()
        self.access_token = payload.get('access_token')
        if not self.access_token:
            raise GeneratorError("Token endpoint returned no access_token")

        self.expires_at = now + timedelta(seconds=int(payload.get('expires_in', 3600)))
        self.last_refreshed = now
        self._save()
        logger.debug("Gemini access token refreshed")

    def refresh_if_stale(self, now: datetime) -> str:
        """
        返回有效的 access token，必要时重新读取或刷新

        Args:
            now: 当前时间

        Returns:
            access token

        Raises:
            GeneratorError: 凭证不存在、已过期且无 refresh token，或刷新失败
        """
        if self.last_refreshed is None or now - self.last_refreshed > RELOAD_INTERVAL:
            self._load(now)

        if not self.access_token and not self.refresh_token:
            raise GeneratorError(
                f"Gemini CLI OAuth credentials not found at {self.path}; "
                "run `gemini` to sign in first"
            )

        if self.expires_at is None or self.expires_at - now < REFRESH_MARGIN:
            if not self.refresh_token:
                raise GeneratorError(
                    "Gemini CLI OAuth credentials expired and no refresh token available"
                )
            self._refresh(now)

        return self.access_token

    def invalidate(self) -> None:
        """清除缓存，下次调用会重新读取凭证文件"""
        self.last_refreshed = None


class GeminiOAuthBackend(LLMBackend):
    """
    Gemini CLI OAuth 后端

    Attributes:
        credentials: OAuth 凭证
    """

    name = "gemini_oauth"

    def __init__(self, config: GeneratorConfig):
        super().__init__(config.model or "gemini-2.0-flash", config.timeout)
        self.credentials = OAuthCredentials(
            path=config.credentials_path,
            client_id=config.oauth_client_id,
            client_secret=config.oauth_client_secret,
            timeout=config.timeout,
        )
        self._project_id: str | None = None

        logger.info(f"GeminiOAuthBackend initialized with model: {self.model}")

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json',
        }

    def _get_project_id(self, access_token: str) -> str:
        """获取并缓存 Code Assist 项目 ID"""
        if self._project_id:
            return self._project_id

        try:
            response = requests.post(
                f"{CODE_ASSIST_ENDPOINT}:loadCodeAssist",
                headers=self._headers(access_token),
                json={},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GeneratorError(f"Failed to load Code Assist project: {e}") from e

        if response.status_code != 200:
            raise GeneratorError(
                f"Failed to load Code Assist project: HTTP {response.status_code}"
            )

        self._project_id = response.json().get('cloudaicompanionProject') or DEFAULT_PROJECT_ID
        return self._project_id

    def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        access_token = self.credentials.refresh_if_stale(datetime.now())
        project_id = self._get_project_id(access_token)

        request_body: dict[str, Any] = {
            'contents': [{'role': 'user', 'parts': [{'text': prompt}]}],
        }
        if system_prompt:
            request_body['systemInstruction'] = {'parts': [{'text': system_prompt}]}

        try:
            response = requests.post(
                f"{CODE_ASSIST_ENDPOINT}:generateContent",
                headers=self._headers(access_token),
                json={
                    'model': self.model,
                    'project': project_id,
                    'request': request_body,
                },
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise GeneratorError(f"Gemini API call timeout: {e}") from e
        except requests.RequestException as e:
            raise GeneratorError(f"Gemini API request failed: {e}") from e

        if response.status_code in (401, 403):
            self.credentials.invalidate()
            self._project_id = None
            raise GeneratorError(
                f"Gemini API authorization failed (HTTP {response.status_code}); "
                "run `gemini` to sign in again"
            )

        if response.status_code != 200:
            raise GeneratorError(
                f"Gemini API error: HTTP {response.status_code} {response.text[:200]}"
            )

        try:
            data = response.json()
            text = data['response']['candidates'][0]['content']['parts'][0]['text']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GeneratorError(f"Unexpected Gemini API response format: {e}") from e

        if not text or not text.strip():
            raise GeneratorError("Gemini API returned empty content")

        return text.strip()
