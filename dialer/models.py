"""
Dialer Models - campaign distribution entities.

Campaigns, the contacts they dial, qualifications (call outcomes) and the
per-disposition call history used for quota accounting.
"""

from django.db import models
from django.contrib.auth.models import User
from django.core.validators import MinValueValidator


class Agent(models.Model):
    user = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        help_text="Associated Django user (optional)"
    )
    extension = models.CharField(
        max_length=20,
        unique=True,
        help_text="SIP extension rung when the agent dials (e.g., 101, 201)"
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Whether agent is enabled in the system"
    )

    freeswitch_password = models.CharField(
        max_length=255,
        help_text="FreeSWITCH password for the agent extension",
        null=True,
        blank=True
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.id} ({self.extension})"


class QualificationGroup(models.Model):
    name = models.CharField(max_length=255)

    def __str__(self):
        return self.name


class Qualification(models.Model):
    """
    Outcome an agent records when disposing a call.

    Qualifications without a group are standard and apply to every
    campaign; grouped ones only to campaigns sharing that group.
    """

    POSITIVE = 'positive'
    NEGATIVE = 'negative'
    NEUTRAL = 'neutral'

    TYPE_CHOICES = [
        (POSITIVE, 'Positive'),
        (NEGATIVE, 'Negative'),
        (NEUTRAL, 'Neutral'),
    ]

    id = models.CharField(
        primary_key=True,
        max_length=50,
        help_text="Stable identifier (e.g., std-94)"
    )
    code = models.CharField(max_length=20, blank=True)
    description = models.CharField(max_length=255, blank=True)
    type = models.CharField(
        max_length=10,
        choices=TYPE_CHOICES,
        default=NEUTRAL,
        db_index=True
    )
    group = models.ForeignKey(
        QualificationGroup,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='qualifications',
        help_text="Null for standard qualifications"
    )

    @property
    def is_standard(self):
        return self.group_id is None

    def __str__(self):
        return f"[{self.code}] {self.description}"


class Campaign(models.Model):
    """
    Outbound calling campaign.

    Agents assigned to several active campaigns are served by priority
    (higher first) then name. Filter and quota rules are stored as ordered
    JSON lists and evaluated by dialer.rules.
    """

    MANUAL = 'manual'
    PROGRESSIVE = 'progressive'
    PREDICTIVE = 'predictive'

    DIALING_MODE_CHOICES = [
        (MANUAL, 'Manual'),
        (PROGRESSIVE, 'Progressive'),
        (PREDICTIVE, 'Predictive'),
    ]

    name = models.CharField(
        max_length=255,
        help_text="Human-readable campaign name"
    )
    description = models.TextField(blank=True, default='')

    priority = models.IntegerField(
        default=5,
        help_text="Higher priority campaigns are served first"
    )
    is_active = models.BooleanField(default=True, db_index=True)

    dialing_mode = models.CharField(
        max_length=20,
        choices=DIALING_MODE_CHOICES,
        default=PROGRESSIVE,
        help_text="Manual waits for the agent to click dial"
    )

    qualification_group = models.ForeignKey(
        QualificationGroup,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='campaigns'
    )

    caller_id = models.CharField(max_length=20, blank=True, default='')

    wrap_up_time = models.PositiveIntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Post-call seconds, 0 skips the post-call state"
    )

    quota_rules = models.JSONField(
        default=list,
        blank=True,
        help_text="[{id, contactField, operator, value, limit}]"
    )
    filter_rules = models.JSONField(
        default=list,
        blank=True,
        help_text="[{id, type, contactField, operator, value}]"
    )

    agents = models.ManyToManyField(
        Agent,
        blank=True,
        related_name='campaigns',
        help_text="Agents allowed to pull contacts from this campaign"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-priority', 'name']

    def __str__(self):
        return f"{self.name} (priority {self.priority})"


class Contact(models.Model):
    PENDING = 'pending'
    CALLED = 'called'
    QUALIFIED = 'qualified'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (CALLED, 'Called'),
        (QUALIFIED, 'Qualified'),
    ]

    campaign = models.ForeignKey(
        Campaign,
        on_delete=models.CASCADE,
        related_name='contacts',
        help_text="Owning campaign, fixed for the contact's lifetime"
    )

    first_name = models.CharField(max_length=255, blank=True, default='')
    last_name = models.CharField(max_length=255, blank=True, default='')
    phone_number = models.CharField(
        max_length=30,
        db_index=True
    )
    postal_code = models.CharField(max_length=20, blank=True, default='')

    custom_fields = models.JSONField(
        default=dict,
        blank=True,
        help_text="Script-defined fields keyed by field id"
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=PENDING,
        db_index=True
    )

    last_qualification = models.ForeignKey(
        Qualification,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        help_text="Most recent disposition"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['campaign', 'status'], name='contact_campaign_status_idx'),
        ]

    def __str__(self):
        return f"{self.first_name} {self.last_name} ({self.phone_number})"


class CallHistory(models.Model):
    """One row per disposition recorded by an agent."""

    contact = models.ForeignKey(
        Contact,
        on_delete=models.CASCADE,
        related_name='call_history'
    )
    campaign = models.ForeignKey(
        Campaign,
        on_delete=models.CASCADE,
        related_name='call_history'
    )
    agent = models.ForeignKey(
        Agent,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='call_history'
    )
    qualification = models.ForeignKey(
        Qualification,
        on_delete=models.PROTECT,
        related_name='call_history'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['campaign', 'qualification'], name='callhist_campaign_qual_idx'),
        ]


class PersonalCallback(models.Model):
    PENDING = 'pending'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
    ]

    agent = models.ForeignKey(
        Agent,
        on_delete=models.CASCADE,
        related_name='personal_callbacks'
    )
    contact = models.ForeignKey(
        Contact,
        on_delete=models.CASCADE,
        related_name='personal_callbacks'
    )
    campaign = models.ForeignKey(
        Campaign,
        on_delete=models.CASCADE,
        related_name='personal_callbacks'
    )
    contact_name = models.CharField(max_length=255, blank=True, default='')
    contact_number = models.CharField(max_length=30)
    scheduled_time = models.DateTimeField(db_index=True)
    notes = models.TextField(blank=True, default='')
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=PENDING
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['scheduled_time']


class ContactNote(models.Model):
    contact = models.ForeignKey(
        Contact,
        on_delete=models.CASCADE,
        related_name='notes'
    )
    campaign = models.ForeignKey(
        Campaign,
        on_delete=models.CASCADE,
        related_name='contact_notes'
    )
    agent = models.ForeignKey(
        Agent,
        on_delete=models.SET_NULL,
        null=True,
        related_name='contact_notes'
    )
    note = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
