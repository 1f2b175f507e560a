from enum import Enum


class ChannelType(str, Enum):
    EMAIL = "email"
    SLACK = "slack"


class ScheduleType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleFrame(str, Enum):
    FIRST = "first"
    MID = "mid"
    LAST = "last"


class ScheduleDay(str, Enum):
    SUN = "sun"
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"


class AlertCondition(str, Enum):
    ROWS = "rows"
    GOAL = "goal"


class PermissionMode(str, Enum):
    READ = "read"
    WRITE = "write"


# Iteration order for channel reconciliation
CHANNEL_TYPES: list["ChannelType"] = [
    ChannelType.EMAIL,
    ChannelType.SLACK,
]

# Schedule types each channel type accepts
CHANNEL_SCHEDULE_TYPES: dict["ChannelType", set["ScheduleType"]] = {
    ChannelType.EMAIL: {ScheduleType.HOURLY, ScheduleType.DAILY, ScheduleType.WEEKLY, ScheduleType.MONTHLY},
    ChannelType.SLACK: {ScheduleType.HOURLY, ScheduleType.DAILY, ScheduleType.WEEKLY, ScheduleType.MONTHLY},
}

# Lifecycle event types written to the outbox
EVENT_SUBSCRIPTION_CREATED = "subscription-created"
EVENT_SUBSCRIPTION_UPDATED = "subscription-updated"
