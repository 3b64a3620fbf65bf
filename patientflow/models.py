import uuid
from django.db import models

from .intake.types import (
    Classification,
    FlowStep,
    HospitalIdConfig,
    HospitalRef,
    IdFormat,
    PriorityLevel,
    RegistrationCategory,
)


def _choices(enum_cls):
    return [(e.value, e.value.replace('_', ' ').title()) for e in enum_cls]


class Hospital(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    subdomain = models.CharField(max_length=63, unique=True)

    # 患者编号配置；patient_id_last_number 是唯一的共享计数器，只能通过条件 UPDATE 修改
    patient_id_format = models.CharField(
        max_length=30, choices=_choices(IdFormat), default=IdFormat.PREFIX_NUMBER.value,
    )
    patient_id_prefix = models.CharField(max_length=10, default='PT')
    patient_id_digits = models.PositiveSmallIntegerField(default=6)
    patient_id_auto_increment = models.BooleanField(default=True)
    patient_id_last_number = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'hospitals'

    def id_config(self):
        return HospitalIdConfig(
            format_template=IdFormat(self.patient_id_format),
            prefix=self.patient_id_prefix,
            digit_width=self.patient_id_digits,
            last_sequence_number=self.patient_id_last_number,
            auto_increment=self.patient_id_auto_increment,
        )

    def as_ref(self):
        return HospitalRef(id=self.id, name=self.name, subdomain=self.subdomain)


class Patient(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    hospital = models.ForeignKey(Hospital, on_delete=models.CASCADE, related_name='patients')
    patient_number = models.CharField(max_length=40)

    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    date_of_birth = models.DateField(blank=True, null=True)
    age = models.PositiveSmallIntegerField(blank=True, null=True)
    gender = models.CharField(max_length=10, blank=True, null=True)
    contact_number = models.CharField(max_length=40, blank=True, null=True)
    email = models.EmailField(blank=True, null=True)
    address = models.TextField(blank=True, null=True)
    emergency_contact = models.JSONField(default=dict, blank=True)
    id_number = models.CharField(max_length=50, blank=True, null=True)

    registration_type = models.CharField(max_length=20, choices=_choices(RegistrationCategory))
    priority_level = models.CharField(
        max_length=20, choices=_choices(PriorityLevel), default=PriorityLevel.NORMAL.value,
    )
    current_flow_step = models.CharField(
        max_length=30, choices=_choices(FlowStep), default=FlowStep.REGISTRATION.value,
    )
    payment_method = models.CharField(max_length=20, default='cash')
    payment_details = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=20, default='active')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patients'
        constraints = [
            models.UniqueConstraint(fields=['hospital', 'patient_number'], name='uniq_patient_number_per_hospital'),
        ]

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def classification(self):
        return Classification(
            registration_category=RegistrationCategory(self.registration_type),
            effective_priority=PriorityLevel(self.priority_level),
        )
