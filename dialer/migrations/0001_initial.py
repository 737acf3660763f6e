import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Agent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('extension', models.CharField(help_text='SIP extension rung when the agent dials (e.g., 101, 201)', max_length=20, unique=True)),
                ('is_active', models.BooleanField(default=True, help_text='Whether agent is enabled in the system')),
                ('freeswitch_password', models.CharField(blank=True, help_text='FreeSWITCH password for the agent extension', max_length=255, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(blank=True, help_text='Associated Django user (optional)', null=True, on_delete=django.db.models.deletion.CASCADE, to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name='QualificationGroup',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255)),
            ],
        ),
        migrations.CreateModel(
            name='Qualification',
            fields=[
                ('id', models.CharField(help_text='Stable identifier (e.g., std-94)', max_length=50, primary_key=True, serialize=False)),
                ('code', models.CharField(blank=True, max_length=20)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('type', models.CharField(choices=[('positive', 'Positive'), ('negative', 'Negative'), ('neutral', 'Neutral')], db_index=True, default='neutral', max_length=10)),
                ('group', models.ForeignKey(blank=True, help_text='Null for standard qualifications', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='qualifications', to='dialer.qualificationgroup')),
            ],
        ),
        migrations.CreateModel(
            name='Campaign',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(help_text='Human-readable campaign name', max_length=255)),
                ('description', models.TextField(blank=True, default='')),
                ('priority', models.IntegerField(default=5, help_text='Higher priority campaigns are served first')),
                ('is_active', models.BooleanField(db_index=True, default=True)),
                ('dialing_mode', models.CharField(choices=[('manual', 'Manual'), ('progressive', 'Progressive'), ('predictive', 'Predictive')], default='progressive', help_text='Manual waits for the agent to click dial', max_length=20)),
                ('caller_id', models.CharField(blank=True, default='', max_length=20)),
                ('wrap_up_time', models.PositiveIntegerField(default=0, help_text='Post-call seconds, 0 skips the post-call state', validators=[django.core.validators.MinValueValidator(0)])),
                ('quota_rules', models.JSONField(blank=True, default=list, help_text='[{id, contactField, operator, value, limit}]')),
                ('filter_rules', models.JSONField(blank=True, default=list, help_text='[{id, type, contactField, operator, value}]')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('agents', models.ManyToManyField(blank=True, help_text='Agents allowed to pull contacts from this campaign', related_name='campaigns', to='dialer.agent')),
                ('qualification_group', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='campaigns', to='dialer.qualificationgroup')),
            ],
            options={
                'ordering': ['-priority', 'name'],
            },
        ),
        migrations.CreateModel(
            name='Contact',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('first_name', models.CharField(blank=True, default='', max_length=255)),
                ('last_name', models.CharField(blank=True, default='', max_length=255)),
                ('phone_number', models.CharField(db_index=True, max_length=30)),
                ('postal_code', models.CharField(blank=True, default='', max_length=20)),
                ('custom_fields', models.JSONField(blank=True, default=dict, help_text='Script-defined fields keyed by field id')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('called', 'Called'), ('qualified', 'Qualified')], db_index=True, default='pending', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('campaign', models.ForeignKey(help_text="Owning campaign, fixed for the contact's lifetime", on_delete=django.db.models.deletion.CASCADE, related_name='contacts', to='dialer.campaign')),
                ('last_qualification', models.ForeignKey(blank=True, help_text='Most recent disposition', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='dialer.qualification')),
            ],
            options={
                'indexes': [models.Index(fields=['campaign', 'status'], name='contact_campaign_status_idx')],
            },
        ),
        migrations.CreateModel(
            name='CallHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('agent', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='call_history', to='dialer.agent')),
                ('campaign', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='call_history', to='dialer.campaign')),
                ('contact', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='call_history', to='dialer.contact')),
                ('qualification', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='call_history', to='dialer.qualification')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['campaign', 'qualification'], name='callhist_campaign_qual_idx')],
            },
        ),
        migrations.CreateModel(
            name='PersonalCallback',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('contact_name', models.CharField(blank=True, default='', max_length=255)),
                ('contact_number', models.CharField(max_length=30)),
                ('scheduled_time', models.DateTimeField(db_index=True)),
                ('notes', models.TextField(blank=True, default='')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('agent', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='personal_callbacks', to='dialer.agent')),
                ('campaign', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='personal_callbacks', to='dialer.campaign')),
                ('contact', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='personal_callbacks', to='dialer.contact')),
            ],
            options={
                'ordering': ['scheduled_time'],
            },
        ),
        migrations.CreateModel(
            name='ContactNote',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('note', models.TextField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('agent', models.ForeignKey(null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='contact_notes', to='dialer.agent')),
                ('campaign', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='contact_notes', to='dialer.campaign')),
                ('contact', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='notes', to='dialer.contact')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
