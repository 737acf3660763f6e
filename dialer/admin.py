from django.contrib import admin

from .models import Agent, CallHistory, Campaign, Contact, ContactNote, PersonalCallback, Qualification, QualificationGroup


# Inline for CallHistory in Contact admin
class CallHistoryInline(admin.TabularInline):
    model = CallHistory
    extra = 0
    readonly_fields = ('agent', 'qualification', 'created_at')
    fields = ('agent', 'qualification', 'created_at')


# Inline for Qualification in QualificationGroup admin
class QualificationInline(admin.TabularInline):
    model = Qualification
    extra = 0
    fields = ('id', 'code', 'description', 'type')


@admin.register(Agent)
class AgentAdmin(admin.ModelAdmin):
    list_display = ('id', 'extension', 'is_active', 'created_at')
    list_filter = ('is_active', 'created_at')
    search_fields = ('extension', 'user__username')


@admin.register(QualificationGroup)
class QualificationGroupAdmin(admin.ModelAdmin):
    search_fields = ('name',)
    inlines = [QualificationInline]


@admin.register(Qualification)
class QualificationAdmin(admin.ModelAdmin):
    list_display = ('id', 'code', 'description', 'type', 'group')
    list_filter = ('type', 'group')
    search_fields = ('id', 'code', 'description')


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    list_display = ('name', 'priority', 'is_active', 'dialing_mode', 'wrap_up_time', 'created_at')
    list_filter = ('is_active', 'dialing_mode')
    search_fields = ('name',)
    filter_horizontal = ('agents',)
    readonly_fields = ('created_at', 'updated_at')


@admin.register(Contact)
class ContactAdmin(admin.ModelAdmin):
    list_display = ('id', 'first_name', 'last_name', 'phone_number', 'campaign', 'status', 'last_qualification')
    list_filter = ('status', 'campaign')
    search_fields = ('first_name', 'last_name', 'phone_number', 'postal_code')
    readonly_fields = ('created_at', 'updated_at')
    inlines = [CallHistoryInline]
    fieldsets = (
        ('Basic Information', {
            'fields': ('campaign', 'first_name', 'last_name', 'phone_number', 'postal_code')
        }),
        ('Status', {
            'fields': ('status', 'last_qualification')
        }),
        ('Metadata', {
            'fields': ('custom_fields', 'created_at', 'updated_at')
        }),
    )


@admin.register(PersonalCallback)
class PersonalCallbackAdmin(admin.ModelAdmin):
    list_display = ('contact_name', 'contact_number', 'agent', 'campaign', 'scheduled_time', 'status')
    list_filter = ('status', 'campaign', 'agent')
    search_fields = ('contact_name', 'contact_number')
    date_hierarchy = 'scheduled_time'


@admin.register(ContactNote)
class ContactNoteAdmin(admin.ModelAdmin):
    list_display = ('contact', 'agent', 'campaign', 'created_at')
    search_fields = ('note',)
