"""HealthButlerAgent: water, stand-up, eye-rest and bedtime reminders."""

from __future__ import annotations

import random
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable

from companion.agent.base import BaseAgent
from companion.agent.state import AgentConfig, AgentContext, AgentMetadata, AgentResult, Priority, Trigger
from companion.agent.tool_registry import ToolContext, define_tool
from companion.agent.tools.notify_tools import create_notify_tool
from companion.notifications import NotificationCenter

WATER_TRIGGER = "trigger-water-reminder"
STAND_TRIGGER = "trigger-stand-reminder"
EYE_REST_TRIGGER = "trigger-eye-rest-reminder"
SLEEP_TRIGGER = "trigger-sleep-reminder"
KEYWORD_TRIGGER = "trigger-health-keywords"

SLEEP_EXPRESSION = "sleep_time"

REMINDER_MESSAGES = {
    "water": [
        "Time for a glass of water! Staying hydrated matters.",
        "Hydration check! How about some warm water?",
        "Water break! Have you had your 8 glasses today?",
    ],
    "stand": [
        "You've been sitting a while. Stand up and stretch!",
        "Time to move: a quick walk does wonders.",
        "Roll your shoulders, stretch your legs!",
    ],
    "eyes": [
        "Give your eyes a break and look into the distance.",
        "20-20-20: every 20 minutes, look 20 feet away for 20 seconds.",
        "Close your eyes for a moment and relax.",
    ],
    "sleep": [
        "It's getting late. Time to wind down for bed.",
        "Early to bed keeps you sharp tomorrow. Good night!",
        "Put the work away and get some rest.",
    ],
}

HEALTH_TIPS = [
    "Drinking about 2 litres of water a day keeps you healthy.",
    "Standing up for 5 minutes every 45 minutes helps prevent sitting-related problems.",
    "Rest your eyes every 20 minutes when using screens.",
    "Keep a regular sleep schedule with 7-8 hours a night.",
    "Regular exercise boosts immunity and focus.",
    "Good posture at your desk reduces back pain.",
    "Deep breathing helps relieve stress and anxiety.",
    "A 15-30 minute nap can boost afternoon productivity.",
]

_WATER_WORDS = ("喝水", "饮水", "drank water", "drink water", "had water")
_REPORT_WORDS = ("统计", "报告", "report", "stats")


@dataclass
class HealthStats:
    day: str
    water_count: int = 0
    stand_count: int = 0
    eye_rest_count: int = 0
    last_water_at: float | None = None
    last_stand_at: float | None = None
    last_eye_rest_at: float | None = None


@dataclass
class HealthSettings:
    water_interval_s: int = 60 * 60
    stand_interval_s: int = 45 * 60
    eye_rest_interval_s: int = 30 * 60
    sleep_hour: int = 23
    daily_water_goal: int = 8
    enable_water: bool = True
    enable_stand: bool = True
    enable_eye_rest: bool = True
    enable_sleep: bool = True


class HealthButlerAgent(BaseAgent):
    metadata = AgentMetadata(
        id="agent-health-butler",
        name="Health Butler",
        description="Keeps an eye on the user's health with timely reminders",
        category="wellness",
        priority=Priority.NORMAL,
    )
    default_triggers = (
        Trigger.schedule(WATER_TRIGGER, 60 * 60, description="Hourly water reminder"),
        Trigger.schedule(STAND_TRIGGER, 45 * 60, description="Stand-up reminder"),
        Trigger.schedule(EYE_REST_TRIGGER, 30 * 60, description="Eye-rest reminder"),
        Trigger.condition(
            SLEEP_TRIGGER,
            SLEEP_EXPRESSION,
            check_interval_ms=30 * 60 * 1000,
            cooldown_ms=60 * 60 * 1000,
            description="Bedtime reminder",
        ),
        Trigger.user_message(
            KEYWORD_TRIGGER,
            ["喝水", "饮水", "健康", "运动", "睡眠", "休息", "眼睛", "疲劳", "累了",
             "water", "health", "exercise", "sleep", "tired"],
            description="Health related conversation",
        ),
    )

    def __init__(
        self,
        notifications: NotificationCenter | None = None,
        settings: HealthSettings | None = None,
        now: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
    ):
        super().__init__(AgentConfig(tools=["notify", "get_tip"], max_steps=3, timeout_ms=10_000))
        self.settings = settings or HealthSettings()
        self._notifications = notifications
        self._now = now
        self._rng = rng or random.Random()
        self.stats = HealthStats(day=self._today())

    def _today(self) -> str:
        return self._now().date().isoformat()

    def _reset_if_new_day(self) -> None:
        if self.stats.day != self._today():
            self.stats = HealthStats(day=self._today())

    async def on_initialize(self) -> None:
        if self._notifications is not None:
            self.register_tool(create_notify_tool(self._notifications))

        rng = self._rng

        @define_tool(name="get_tip", description="Get a random health tip.")
        async def get_tip(args: dict, ctx: ToolContext) -> str:
            return rng.choice(HEALTH_TIPS)

        self.register_tool(get_tip)

    # ------------------------------------------------------------------
    # Gate and conditions
    # ------------------------------------------------------------------

    def _due(self, last: float | None, interval_s: int) -> bool:
        return last is None or self._now().timestamp() - last >= interval_s

    def is_sleep_time(self) -> bool:
        hour = self._now().hour
        return hour >= self.settings.sleep_hour or hour < 2

    async def evaluate_condition(self, expression: str, context: AgentContext) -> bool:
        if expression == SLEEP_EXPRESSION:
            return self.settings.enable_sleep and self.is_sleep_time()
        return False

    async def should_trigger(self, context: AgentContext) -> bool:
        s = self.settings
        if context.trigger_source == "user_message":
            return bool(context.user_message)
        if context.trigger_id == WATER_TRIGGER:
            return s.enable_water and self._due(self.stats.last_water_at, s.water_interval_s)
        if context.trigger_id == STAND_TRIGGER:
            return s.enable_stand and self._due(self.stats.last_stand_at, s.stand_interval_s)
        if context.trigger_id == EYE_REST_TRIGGER:
            return s.enable_eye_rest and self._due(self.stats.last_eye_rest_at, s.eye_rest_interval_s)
        if context.trigger_id == SLEEP_TRIGGER:
            return s.enable_sleep and self.is_sleep_time()
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def on_execute(self, context: AgentContext) -> AgentResult:
        self._reset_if_new_day()
        if context.trigger_source == "user_message" and context.user_message:
            return await self._handle_message(context.user_message)

        kind = {
            WATER_TRIGGER: "water",
            STAND_TRIGGER: "stand",
            EYE_REST_TRIGGER: "eyes",
            SLEEP_TRIGGER: "sleep",
        }.get(context.trigger_id)
        if kind is None:
            return AgentResult.ok(data={"triggered": False})
        return await self._remind(kind)

    async def _handle_message(self, message: str) -> AgentResult:
        lowered = message.lower()
        if any(w in lowered for w in ("健康", "health")) and any(w in lowered for w in _REPORT_WORDS):
            return self.report()
        if any(w in lowered for w in _WATER_WORDS):
            return self.record_water()

        tip = await self.call_tool("get_tip")
        text = tip.data if tip.success else "Healthy habits matter!"
        return AgentResult.ok(f"Health tip: {text}", data={"type": "tip"})

    async def _remind(self, kind: str) -> AgentResult:
        message = self._rng.choice(REMINDER_MESSAGES[kind])
        if "notify" in self.tools:
            await self.call_tool(
                "notify", {"title": "Health reminder", "body": message, "type": "system", "sound": True}
            )
        now = self._now().timestamp()
        if kind == "water":
            self.stats.last_water_at = now
        elif kind == "stand":
            self.stats.last_stand_at = now
        elif kind == "eyes":
            self.stats.last_eye_rest_at = now
        return AgentResult.ok(message, should_speak=True, data={"reminder_type": kind})

    def record_water(self) -> AgentResult:
        self.stats.water_count += 1
        self.stats.last_water_at = self._now().timestamp()
        goal = self.settings.daily_water_goal
        remaining = goal - self.stats.water_count
        if remaining <= 0:
            message = f"Great job! {self.stats.water_count} glasses today, daily goal reached!"
        else:
            message = f"Logged! {self.stats.water_count} glasses so far, {remaining} to go."
        return AgentResult.ok(
            message,
            should_speak=True,
            data={"type": "water_recorded", "count": self.stats.water_count, "goal": goal},
        )

    def record_stand(self) -> None:
        self.stats.stand_count += 1
        self.stats.last_stand_at = self._now().timestamp()

    def record_eye_rest(self) -> None:
        self.stats.eye_rest_count += 1
        self.stats.last_eye_rest_at = self._now().timestamp()

    def report(self) -> AgentResult:
        s = self.stats
        advice = []
        if s.water_count < self.settings.daily_water_goal / 2:
            advice.append("drink a bit more water")
        if s.stand_count < 4:
            advice.append("stand up and move more often")
        if not advice:
            advice.append("keep up the good habits")
        text = (
            "Today's health report:\n"
            f"Water: {s.water_count}/{self.settings.daily_water_goal} glasses\n"
            f"Stand breaks: {s.stand_count}\n"
            f"Eye rests: {s.eye_rest_count}\n"
            f"Advice: {'; '.join(advice)}"
        )
        return AgentResult.ok(text, data={"type": "report", "stats": asdict(s)})
