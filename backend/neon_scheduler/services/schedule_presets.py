"""Static catalogues offered to the dashboard: cron patterns, schedule
templates, retry presets, timezone options and built-in agent metadata."""

from datetime import datetime
from typing import Dict, List, Optional

from neon_scheduler.core.errors import TemplateNotFound
from neon_scheduler.schemas.scheduler import (
    CronPattern,
    RetryConfig,
    ScheduleTemplate,
    TimezoneOption,
)
from neon_scheduler.services.cron_engine import format_utc_offset

CRON_PATTERNS: List[CronPattern] = [
    CronPattern(
        id="every_minute",
        name="Every Minute",
        description="Runs every minute (for testing only)",
        expression="* * * * *",
        examples=["Development testing", "High-frequency monitoring"],
    ),
    CronPattern(
        id="every_5_minutes",
        name="Every 5 Minutes",
        description="Runs every 5 minutes",
        expression="*/5 * * * *",
        examples=["Real-time monitoring", "Quick health checks"],
    ),
    CronPattern(
        id="every_15_minutes",
        name="Every 15 Minutes",
        description="Runs every 15 minutes",
        expression="*/15 * * * *",
        examples=["Frequent data sync", "Social media monitoring"],
    ),
    CronPattern(
        id="every_30_minutes",
        name="Every 30 Minutes",
        description="Runs every 30 minutes",
        expression="*/30 * * * *",
        examples=["Regular updates", "Content analysis"],
    ),
    CronPattern(
        id="hourly",
        name="Hourly",
        description="Runs every hour at minute 0",
        expression="0 * * * *",
        examples=["Analytics collection", "Report generation"],
    ),
    CronPattern(
        id="every_2_hours",
        name="Every 2 Hours",
        description="Runs every 2 hours",
        expression="0 */2 * * *",
        examples=["Trend analysis", "SEO monitoring"],
    ),
    CronPattern(
        id="every_6_hours",
        name="Every 6 Hours",
        description="Runs every 6 hours",
        expression="0 */6 * * *",
        examples=["SEO alerts", "Performance reviews"],
    ),
    CronPattern(
        id="every_12_hours",
        name="Every 12 Hours",
        description="Runs twice daily at midnight and noon",
        expression="0 0,12 * * *",
        examples=["Daily reports", "Campaign updates"],
    ),
    CronPattern(
        id="daily",
        name="Daily",
        description="Runs once daily at midnight",
        expression="0 0 * * *",
        examples=["Daily summaries", "Cleanup tasks"],
    ),
    CronPattern(
        id="daily_morning",
        name="Daily Morning",
        description="Runs daily at 9 AM",
        expression="0 9 * * *",
        examples=["Morning reports", "Campaign launches"],
    ),
    CronPattern(
        id="daily_evening",
        name="Daily Evening",
        description="Runs daily at 6 PM",
        expression="0 18 * * *",
        examples=["End-of-day reports", "Performance summaries"],
    ),
    CronPattern(
        id="weekly",
        name="Weekly",
        description="Runs weekly on Monday at midnight",
        expression="0 0 * * 1",
        examples=["Weekly reports", "Content planning"],
    ),
    CronPattern(
        id="monthly",
        name="Monthly",
        description="Runs monthly on the 1st at midnight",
        expression="0 0 1 * *",
        examples=["Monthly analytics", "Budget reviews"],
    ),
    CronPattern(
        id="business_hours",
        name="Business Hours",
        description="Runs every hour during business hours (9 AM - 5 PM, Mon-Fri)",
        expression="0 9-17 * * 1-5",
        examples=["Customer support", "Business monitoring"],
    ),
]

SCHEDULE_TEMPLATES: List[ScheduleTemplate] = [
    ScheduleTemplate(
        id="seo_monitoring_frequent",
        name="SEO Monitoring (Frequent)",
        description="Monitors SEO performance every 2 hours for critical sites",
        agent_type="SEOAlertAgent",
        cron="0 */2 * * *",
        config={
            "timeframe": "24h",
            "thresholds": {
                "scoreDropThreshold": 5,
                "keywordCannibalThreshold": 2,
                "metadataCompleteness": 0.9,
            },
        },
        retry_config=RetryConfig(
            max_retries=2, retry_delay_ms=10000, backoff_multiplier=2, max_retry_delay_ms=30000
        ),
        timeout_ms=180000,
        tags=["seo", "monitoring", "frequent"],
    ),
    ScheduleTemplate(
        id="seo_monitoring_daily",
        name="SEO Monitoring (Daily)",
        description="Comprehensive daily SEO analysis and alerting",
        agent_type="SEOAlertAgent",
        cron="0 9 * * *",
        config={
            "timeframe": "7d",
            "thresholds": {
                "scoreDropThreshold": 10,
                "keywordCannibalThreshold": 3,
                "metadataCompleteness": 0.8,
            },
        },
        retry_config=RetryConfig(
            max_retries=3, retry_delay_ms=15000, backoff_multiplier=2, max_retry_delay_ms=60000
        ),
        timeout_ms=300000,
        tags=["seo", "monitoring", "daily"],
    ),
    ScheduleTemplate(
        id="trend_analysis_hourly",
        name="Trend Analysis (Hourly)",
        description="Hourly trend analysis for rapid market insights",
        agent_type="TrendAgent",
        cron="0 * * * *",
        config={
            "keywords": ["AI", "marketing", "automation"],
            "platforms": ["twitter", "instagram", "tiktok"],
            "region": "global",
        },
        retry_config=RetryConfig(
            max_retries=2, retry_delay_ms=5000, backoff_multiplier=2, max_retry_delay_ms=20000
        ),
        timeout_ms=240000,
        tags=["trends", "analysis", "hourly"],
    ),
    ScheduleTemplate(
        id="trend_analysis_daily",
        name="Trend Analysis (Daily)",
        description="Comprehensive daily trend analysis and reporting",
        agent_type="TrendAgent",
        cron="0 8 * * *",
        config={
            "keywords": ["digital marketing", "social media", "content creation"],
            "platforms": ["all"],
            "region": "global",
            "includeCompetitorAnalysis": True,
        },
        retry_config=RetryConfig(
            max_retries=3, retry_delay_ms=10000, backoff_multiplier=2, max_retry_delay_ms=45000
        ),
        timeout_ms=420000,
        tags=["trends", "analysis", "daily", "comprehensive"],
    ),
    ScheduleTemplate(
        id="content_generation_weekly",
        name="Content Generation (Weekly)",
        description="Weekly content generation for blogs and social media",
        agent_type="ContentAgent",
        cron="0 10 * * 1",
        config={
            "contentTypes": ["blog", "social"],
            "topics": ["marketing tips", "industry insights", "how-to guides"],
            "tone": "professional",
            "wordCount": 500,
        },
        retry_config=RetryConfig(
            max_retries=2, retry_delay_ms=20000, backoff_multiplier=2, max_retry_delay_ms=60000
        ),
        timeout_ms=600000,
        tags=["content", "generation", "weekly"],
    ),
    ScheduleTemplate(
        id="performance_monitoring",
        name="Performance Monitoring",
        description="Monitor system and agent performance every 30 minutes",
        agent_type="SEOAlertAgent",
        cron="*/30 * * * *",
        config={
            "monitoringType": "performance",
            "metrics": ["response_time", "success_rate", "error_rate"],
        },
        retry_config=RetryConfig(
            max_retries=1, retry_delay_ms=5000, backoff_multiplier=1, max_retry_delay_ms=5000
        ),
        timeout_ms=60000,
        tags=["monitoring", "performance", "frequent"],
    ),
]

RETRY_PRESETS: Dict[str, RetryConfig] = {
    "minimal": RetryConfig(
        max_retries=1, retry_delay_ms=5000, backoff_multiplier=1, max_retry_delay_ms=5000
    ),
    "standard": RetryConfig(
        max_retries=3, retry_delay_ms=5000, backoff_multiplier=2, max_retry_delay_ms=60000
    ),
    "aggressive": RetryConfig(
        max_retries=5, retry_delay_ms=2000, backoff_multiplier=1.5, max_retry_delay_ms=30000
    ),
    "patient": RetryConfig(
        max_retries=3, retry_delay_ms=15000, backoff_multiplier=2, max_retry_delay_ms=120000
    ),
}

# (IANA name, label); offsets are computed when requested
TIMEZONES = [
    ("UTC", "UTC"),
    ("America/New_York", "Eastern Time"),
    ("America/Chicago", "Central Time"),
    ("America/Denver", "Mountain Time"),
    ("America/Los_Angeles", "Pacific Time"),
    ("Europe/London", "London"),
    ("Europe/Paris", "Paris"),
    ("Europe/Berlin", "Berlin"),
    ("Asia/Tokyo", "Tokyo"),
    ("Asia/Shanghai", "Shanghai"),
    ("Asia/Dubai", "Dubai"),
    ("Australia/Sydney", "Sydney"),
]

AGENT_METADATA: Dict[str, dict] = {
    "SEOAlertAgent": {
        "display_name": "SEO Alert Agent",
        "description": "Monitors SEO performance and generates alerts for issues",
        "icon": "\U0001F50D",
        "color": "#3b82f6",
        "default_tasks": ["monitor_seo_performance", "detect_score_drops", "find_opportunities"],
        "config_schema": {
            "timeframe": {
                "type": "select",
                "options": ["24h", "7d", "30d"],
                "default": "24h",
                "description": "Analysis timeframe",
            },
            "thresholds": {
                "type": "object",
                "properties": {
                    "scoreDropThreshold": {"type": "number", "default": 10, "min": 1, "max": 100},
                    "keywordCannibalThreshold": {"type": "number", "default": 3, "min": 1, "max": 10},
                    "metadataCompleteness": {
                        "type": "number",
                        "default": 0.8,
                        "min": 0,
                        "max": 1,
                        "step": 0.1,
                    },
                },
            },
        },
    },
    "TrendAgent": {
        "display_name": "Trend Analysis Agent",
        "description": "Analyzes market trends and social media patterns",
        "icon": "\U0001F4C8",
        "color": "#10b981",
        "default_tasks": ["analyze_trends", "predict_viral_content", "track_hashtags"],
        "config_schema": {
            "keywords": {
                "type": "array",
                "default": ["marketing", "AI", "social media"],
                "description": "Keywords to track",
            },
            "platforms": {
                "type": "multiselect",
                "options": ["twitter", "instagram", "tiktok", "linkedin", "all"],
                "default": ["twitter", "instagram"],
                "description": "Platforms to analyze",
            },
            "region": {
                "type": "select",
                "options": ["global", "US", "Europe", "Asia"],
                "default": "global",
                "description": "Geographic region",
            },
        },
    },
    "ContentAgent": {
        "display_name": "Content Generation Agent",
        "description": "Generates content for blogs, social media, and marketing",
        "icon": "✍️",
        "color": "#8b5cf6",
        "default_tasks": ["generate_content", "optimize_content", "create_variants"],
        "config_schema": {
            "contentTypes": {
                "type": "multiselect",
                "options": ["blog", "social", "email", "ads"],
                "default": ["blog", "social"],
                "description": "Types of content to generate",
            },
            "tone": {
                "type": "select",
                "options": ["professional", "casual", "technical", "creative"],
                "default": "professional",
                "description": "Content tone",
            },
            "wordCount": {
                "type": "number",
                "default": 500,
                "min": 100,
                "max": 2000,
                "description": "Target word count",
            },
        },
    },
}

RECOMMENDATIONS: Dict[str, List[str]] = {
    "SEOAlertAgent": ["seo_monitoring_daily", "seo_monitoring_frequent"],
    "TrendAgent": ["trend_analysis_daily", "trend_analysis_hourly"],
    "ContentAgent": ["content_generation_weekly"],
}

_SCHEDULE_NAME_PREFIXES = {
    "SEOAlertAgent": "SEO Monitoring",
    "TrendAgent": "Trend Analysis",
    "ContentAgent": "Content Generation",
}


def get_template(template_id: str) -> ScheduleTemplate:
    for template in SCHEDULE_TEMPLATES:
        if template.id == template_id:
            return template
    raise TemplateNotFound(template_id)


def list_templates(agent_type: Optional[str] = None, tag: Optional[str] = None) -> List[ScheduleTemplate]:
    templates = SCHEDULE_TEMPLATES
    if agent_type:
        templates = [t for t in templates if t.agent_type == agent_type]
    if tag:
        templates = [t for t in templates if tag in t.tags]
    return list(templates)


def recommended_templates(agent_type: str) -> List[ScheduleTemplate]:
    return [get_template(template_id) for template_id in RECOMMENDATIONS.get(agent_type, [])]


def timezone_options(at: Optional[datetime] = None) -> List[TimezoneOption]:
    return [
        TimezoneOption(value=name, label=label, offset=format_utc_offset(name, at))
        for name, label in TIMEZONES
    ]


def generate_schedule_name(agent_type: str, frequency: str) -> str:
    return f"{_SCHEDULE_NAME_PREFIXES.get(agent_type, agent_type)} - {frequency}"
