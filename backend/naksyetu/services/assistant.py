"""Read-only natural language assistant for the admin console.

Gemini picks one of the query tools below as JSON, the tool runs against
the store, and Gemini turns the result into a short answer.
"""
import datetime
import json
import logging
import re

from fastapi import HTTPException
import httpx
from google import genai
from google.genai import errors as genai_errors

from .. import db as db_mod
from ..datetime_utils import now_utc, parse_iso, start_of_day
from ..enums import ListingType
from ..settings import get_settings
from ..utils import serialize
from . import analytics, audit

logger = logging.getLogger('assistant')

LOG_LIMIT = 50
QUERY_LIMIT = 20


######### Tools #########

def get_date_range(period: str) -> dict:
    key = (period or '').strip().lower().replace(' ', '_')
    now = now_utc()
    today = start_of_day(now)
    def end_of(start):
        return start + datetime.timedelta(days=1) - datetime.timedelta(microseconds=1)

    if key == 'today':
        start, end = today, end_of(today)
    elif key == 'yesterday':
        start = today - datetime.timedelta(days=1)
        end = end_of(start)
    elif key == 'last_7_days':
        start, end = today - datetime.timedelta(days=7), now
    else:
        try:
            day = parse_iso(period)
        except ValueError:
            day = None
        if day is None:
            raise ValueError('Unsupported time period. Use "today", "yesterday", "last_7_days", '
                             'or a specific date in YYYY-MM-DD format.')
        start = start_of_day(day)
        end = end_of(start)
    return {'start_date': start.isoformat(), 'end_date': end.isoformat()}


async def get_logs(admin_name: str | None = None, action: str | None = None, target_type: str | None = None,
                   target_id: str | None = None, start_date: str | None = None, end_date: str | None = None) -> list:
    query = audit.build_log_query(
        action=action, target_type=target_type, target_id=target_id, admin_name=admin_name,
        start=parse_iso(start_date),
    )
    if end_date:
        query.setdefault('timestamp', {})['$lte'] = parse_iso(end_date)
    cursor = db_mod.db.audit_logs.find(query).sort('timestamp', -1).limit(LOG_LIMIT)
    return await cursor.to_list(length=LOG_LIMIT)


async def get_dashboard_stats() -> dict:
    data = await analytics.dashboard()
    return {k: data[k] for k in ('total_users', 'total_revenue', 'total_events')}


async def get_users(name: str | None = None, email: str | None = None, role: str | None = None) -> list:
    query: dict = {}
    if name:
        query['name_lower'] = {'$regex': f'^{re.escape(name.lower())}'}
    if email:
        query['email'] = email.lower()
    if role:
        query['role'] = role
    docs = await db_mod.db.users.find(query).limit(QUERY_LIMIT).to_list(length=QUERY_LIMIT)
    for doc in docs:
        for secret in ('password_hash', 'failed_login_attempts', 'lockout_until'):
            doc.pop(secret, None)
    return docs


async def get_events(name: str | None = None, status: str | None = None, organizer_name: str | None = None) -> list:
    query: dict = {}
    if name:
        query['name'] = name
    if status:
        query['status'] = status
    if organizer_name:
        query['organizer_name'] = organizer_name
    coll = db_mod.db[ListingType.event.collection]
    return await coll.find(query).limit(QUERY_LIMIT).to_list(length=QUERY_LIMIT)


async def get_transactions(user_id: str | None = None, user_name: str | None = None, status: str | None = None) -> list:
    if user_name and not user_id:
        user = await db_mod.db.users.find_one({'name_lower': user_name.lower()})
        if not user:
            return []
        user_id = str(user['_id'])
    if not user_id:
        return []
    query = {'user_id': str(user_id)}
    if status:
        query['status'] = status
    cursor = db_mod.db.transactions.find(query).sort('created_at', -1).limit(QUERY_LIMIT)
    return await cursor.to_list(length=QUERY_LIMIT)


TOOLS = {
    'get_date_range': (get_date_range, 'period: "today" | "yesterday" | "last_7_days" | "YYYY-MM-DD"'),
    'get_logs': (get_logs, 'admin_name?, action?, target_type?, target_id?, start_date?, end_date? (ISO)'),
    'get_dashboard_stats': (get_dashboard_stats, 'no arguments'),
    'get_users': (get_users, 'name? (prefix), email?, role?'),
    'get_events': (get_events, 'name?, status?, organizer_name?'),
    'get_transactions': (get_transactions, 'user_id? or user_name?, status?'),
}

SYSTEM_PROMPT = """You are the NaksYetu admin assistant. You have READ-ONLY access to the platform's data
through the tools listed below and can never change anything.

Tools:
{tools}

Choose exactly one tool for the admin's question and reply with JSON only:
{{"tool": "<tool name>", "args": {{...}}}}
If no tool fits, reply {{"tool": null, "args": {{}}}}."""


async def run_tool(name: str, args: dict | None):
    if name not in TOOLS:
        raise ValueError(f'Unknown tool: {name}')
    func, _ = TOOLS[name]
    result = func(**(args or {}))
    if hasattr(result, '__await__'):
        result = await result
    return serialize(result)


######### Gemini #########

class GeminiAI:
    def __init__(self, api_key: str | None = None, model: str | None = None):
        cfg = get_settings()
        self.api_key = api_key if api_key is not None else cfg.gemini_api_key
        self.model = model or cfg.gemini_model
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self):
        if self._client is None and self.api_key:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def _generate(self, contents, max_tokens: int = 1024, temperature: float = 0.2) -> str | None:
        if not self.client:
            logger.warning('assistant.gemini.unavailable')
            return None
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config={'max_output_tokens': max_tokens, 'temperature': temperature},
            )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            logger.error('assistant.gemini.error error=%s', exc)
            return None
        return response.text

    async def choose_tool(self, question: str) -> dict:
        tools = '\n'.join(f'- {name}({sig})' for name, (_, sig) in TOOLS.items())
        prompt = f"{SYSTEM_PROMPT.format(tools=tools)}\n\nToday is {now_utc().date().isoformat()}.\nQuestion: {question}"
        raw = await self._generate(prompt, max_tokens=512, temperature=0.0)
        if not raw:
            return {'tool': None, 'args': {}}
        clean = raw.strip().replace('```json', '').replace('```', '').strip()
        try:
            choice = json.loads(clean)
        except json.JSONDecodeError:
            logger.warning('assistant.plan.unparsable response=%s', raw[:200])
            return {'tool': None, 'args': {}}
        if not isinstance(choice, dict):
            return {'tool': None, 'args': {}}
        return {'tool': choice.get('tool'), 'args': choice.get('args') or {}}

    async def summarise(self, question: str, tool: str | None, data) -> str:
        prompt = (
            'You are the NaksYetu admin assistant. Answer the admin\'s question in friendly, concise prose '
            'using only the data below. Amounts are in Kenyan shillings (Ksh).\n\n'
            f'Question: {question}\nTool used: {tool}\nData (JSON):\n{json.dumps(data, default=str)[:20000]}'
        )
        answer = await self._generate(prompt, max_tokens=1024, temperature=0.4)
        return answer or "I couldn't summarise that data right now."


async def ask(question: str, ai: GeminiAI | None = None) -> dict:
    question = (question or '').strip()
    if not question:
        raise HTTPException(status_code=400, detail='Question is required.')
    ai = ai or GeminiAI()
    if not ai.available:
        raise HTTPException(status_code=503, detail='The assistant is not configured.')

    choice = await ai.choose_tool(question)
    tool = choice['tool']
    data = None
    if tool:
        try:
            data = await run_tool(tool, choice['args'])
        except (TypeError, ValueError) as exc:
            logger.info('assistant.tool.rejected tool=%s error=%s', tool, exc)
            return {'answer': f'I could not run that query: {exc}', 'tool': tool, 'data': None}
    logger.info('assistant.answered tool=%s', tool)
    if not tool:
        return {'answer': "I can only answer questions about logs, users, events, transactions and dashboard totals.",
                'tool': None, 'data': None}
    answer = await ai.summarise(question, tool, data)
    return {'answer': answer, 'tool': tool, 'data': data}
