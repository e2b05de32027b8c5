"""
LLM service for extracting search criteria from complex messages using Ollama.

Only consulted when the rule-based extractor finds too little in a message
that looks too complex for it. Every failure path (provider down, timeout,
HTTP error, unparseable output) falls back to the rule-based result, so
extract_criteria never raises.
"""

import json
import logging
import re
import requests
from typing import Any, Dict, Optional

from core.config import LLM_MAX_TOKENS, LLM_MODEL, LLM_TEMPERATURE, LLM_TIMEOUT
from core.models import SearchCriteria
from processors.criteria_extractor import CriteriaExtractor
from services.embedding_service import ollama_base_url
from services.provider_health import ProviderHealth

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Phân tích tin nhắn và xác định xem có liên quan đến tìm phòng trọ không:
Tin nhắn: "{message}"
JSON format bắt buộc:
{{
"isRoomSearchQuery": true|false,
"category": "phong_tro|can_ho|nha_nguyen_can|chung_cu_mini|homestay|null",
"provinceName": "tên_tỉnh_thành|null",
"wardName": "tên_quận_huyện_phường|null",
"amenityNames": ["tên_tiện_ích1", "tên_tiện_ích2"] hoặc null,
"minPrice": "số_tiền_VND|null",
"maxPrice": "số_tiền_VND|null",
"minArea": "diện_tích_m2|null",
"maxArea": "diện_tích_m2|null"
}}
Quy tắc trích xuất:
IS_ROOM_SEARCH_QUERY:
- Nếu tin nhắn liên quan đến tìm kiếm, thuê phòng trọ, căn hộ, nhà ở thì gán true
- Nếu tin nhắn hỏi về AI model, công nghệ, thời tiết, tin tức, hoặc chủ đề không liên quan đến bất động sản thì gán false
CATEGORY:
- "phòng trọ" gán "phong_tro"
- "căn hộ" gán "can_ho"
- "nhà nguyên căn" gán "nha_nguyen_can"
- "chung cư mini" gán "chung_cu_mini"
- "homestay" gán "homestay"
- Nếu không có thông tin gán null.
PROVINCE:
- "Thành phố Hồ Chí Minh", "TP.HCM", "Sài Gòn" gán "Hồ Chí Minh"
- "Đà Nẵng" gán "Đà Nẵng"
- Nếu là tỉnh/thành khác gán giữ nguyên tên.
- Nếu không có thông tin gán null.
WARD:
- "Quận 1", "Q1", "Q.1" gán "Quận 1"
- "Gò Vấp", "Go Vap" gán "Quận Gò Vấp"
- Nếu là quận/huyện/phường khác gán giữ nguyên tên đầy đủ.
- Nếu không có thông tin gán null.
AMENITIES:
- Chỉ ghi nhận nếu nằm trong danh sách ["wifi", "máy lạnh", "ban công", "điều hòa", "tủ lạnh", "thang máy", "bãi đỗ xe", "nhà bếp", "tủ quần áo", "máy giặt", "tivi"].
- Nếu có tiện ích khác gán "tiện ích khác".
- Nếu không có thông tin gán null.
PRICE:
- "dưới 3 triệu" gán "minPrice": 2000000, "maxPrice": 3000000
- Các khoảng giá khác (vd: "5-7 triệu") gán minPrice = 5000000, maxPrice = 7000000
- Luôn đảm bảo minPrice < maxPrice
- Nếu không có thông tin gán null.
AREA:
- Nếu có diện tích cụ thể (vd: "22m2") gán "minArea": 20, "maxArea": 25.
- Luôn đảm bảo minArea < maxArea
- Nếu không có thông tin gán null.
Trả về duy nhất JSON hợp lệ, không thêm bất kỳ chữ nào khác, không giải thích."""


def parse_json_response(text: str) -> Optional[Dict[str, Any]]:
    """
    Parse model output that should be a JSON object.

    Tries, in order: the whole text, the first balanced {...} block, and the
    text from the first '{' with missing closing braces appended.

    Args:
        text (str): Raw model output

    Returns:
        dict, or None when nothing parses to an object
    """
    if not text:
        return None
    text = text.strip()

    candidates = [text]
    start = text.find('{')
    if start != -1:
        block = _first_balanced_block(text, start)
        if block is not None:
            candidates.append(block)
        else:
            tail = re.sub(r',\s*$', '', text[start:].rstrip())
            missing = tail.count('{') - tail.count('}')
            if missing > 0:
                candidates.append(tail + '}' * missing)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _first_balanced_block(text: str, start: int) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


class LLMService:
    """
    Service for extracting criteria with Ollama's language models.
    """

    def __init__(
        self,
        extractor: CriteriaExtractor,
        model: str = LLM_MODEL,
        ollama_host: str = None,
        temperature: float = LLM_TEMPERATURE,
        max_tokens: int = LLM_MAX_TOKENS,
        timeout: float = LLM_TIMEOUT,
        health: ProviderHealth = None
    ):
        """
        Initialize the LLM service.

        Args:
            extractor (CriteriaExtractor): Rule extractor, used to normalise
                model output and as the fallback
            model (str): The Ollama language model to use
            ollama_host (str): Ollama server host (default: OLLAMA_HOST)
            temperature (float): Sampling temperature
            max_tokens (int): num_predict sent to Ollama
            timeout (float): Request timeout in seconds
            health (ProviderHealth): Shared cooldown tracker for the provider
        """
        self.extractor = extractor
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.health = health or ProviderHealth('ollama-generate')
        self.ollama_url = ollama_base_url(ollama_host)
        self.generate_endpoint = f"{self.ollama_url}/api/generate"

        logger.info(f"Initialized LLMService with model={model}, ollama_url={self.ollama_url}")

    def generate(self, prompt: str) -> Optional[str]:
        """
        Run one JSON-mode generation.

        Args:
            prompt (str): Full prompt

        Returns:
            str: Raw model output, or None if the call failed
        """
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": self.temperature,
                "num_ctx": 2048,
                "top_p": 0.5,
                "num_predict": self.max_tokens
            }
        }

        try:
            response = requests.post(self.generate_endpoint, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to reach Ollama: {e}")
            self.health.mark_failure(str(e))
            return None

        if response.status_code != 200:
            logger.error(f"Ollama API error: {response.status_code} - {response.text}")
            self.health.mark_failure(f"HTTP {response.status_code}")
            return None

        self.health.mark_success()
        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON envelope from Ollama: {e}")
            return None
        if not isinstance(body, dict) or not isinstance(body.get('response'), str):
            logger.error(f"Unexpected envelope from Ollama: {str(body)[:200]}")
            return None
        return body['response'].strip() or None

    def extract_criteria(self, message: str) -> SearchCriteria:
        """
        Extract criteria with the LLM, falling back to the rule extractor.

        Args:
            message (str): Raw user message

        Returns:
            SearchCriteria
        """
        if not self.health.is_available():
            logger.warning("LLM provider cooling down, using rule-based extraction")
            return self.extractor.extract(message)

        output = self.generate(EXTRACTION_PROMPT.format(message=message.replace('"', "'")))
        if output is None:
            return self.extractor.extract(message)

        fields = parse_json_response(output)
        if fields is None:
            logger.warning(f"Unparseable LLM output, using rule-based extraction: {output[:200]}")
            return self.extractor.extract(message)

        try:
            criteria = self.extractor.build_from_fields(fields)
        except Exception as e:
            logger.warning(f"LLM fields rejected ({e}), using rule-based extraction", exc_info=True)
            return self.extractor.extract(message)

        logger.info(f"LLM extraction completeness={criteria.completeness_score}")
        return criteria

    def health_check(self) -> bool:
        """
        Check if Ollama service is available.

        Returns:
            bool: True if service is healthy
        """
        try:
            response = requests.get(f"{self.ollama_url}/api/tags", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False
