"""
Unit tests for the service layer (需要数据库)。

覆盖：
- allocate_patient_number：CAS 成功 / 被抢先后重试 / 重试耗尽
- register_patient：分流、校验失败不消耗序号、插入失败序号回滚、手动编号
- advance_patient_flow / escalate_patient_priority
- update_id_settings / preview_patient_id / list_patients_at_step
"""
import threading
import uuid
from unittest.mock import patch

import pytest
from django.db import connection

from patientflow import services
from patientflow.exceptions import (
    AllocationConflictError,
    BlockError,
    ConfigurationError,
    InvalidTransitionError,
    ValidationError,
)
from patientflow.models import Hospital, Patient
from tests.conftest import HospitalFactory, PatientFactory


def last_number(hospital):
    hospital.refresh_from_db()
    return hospital.patient_id_last_number


# -------------------------------------------------------------------
# Context
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestBuildContext:

    def test_existing_hospital(self, hospital):
        context = services.build_context(hospital.id)
        assert context.hospital.subdomain == 'general'
        assert context.user_id is None

    def test_unknown_hospital_404(self):
        with pytest.raises(BlockError) as exc_info:
            services.build_context(uuid.uuid4())
        assert exc_info.value.code == 'HOSPITAL_NOT_FOUND'
        assert exc_info.value.http_status == 404


# -------------------------------------------------------------------
# Allocation
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestAllocatePatientNumber:

    def test_scenario_pt000042(self, hospital, context):
        Hospital.objects.filter(id=hospital.id).update(patient_id_last_number=41)

        formatted, config = services.allocate_patient_number(context)

        assert formatted == 'PT000042'
        assert config.last_sequence_number == 42
        assert last_number(hospital) == 42

    def test_sequential_calls_are_contiguous(self, hospital, context):
        ids = [services.allocate_patient_number(context)[0] for _ in range(10)]

        assert ids == [f'PT{n:06d}' for n in range(1, 11)]
        assert last_number(hospital) == 10

    def test_retries_after_losing_race(self, hospital, context):
        real_cas = services._compare_and_swap_last_number
        calls = []

        def racing_cas(hospital_id, observed, new):
            if not calls:
                # 另一个登记抢先消耗了序号
                Hospital.objects.filter(id=hospital_id).update(patient_id_last_number=observed + 1)
            calls.append(observed)
            return real_cas(hospital_id, observed, new)

        with patch.object(services, '_compare_and_swap_last_number', side_effect=racing_cas):
            formatted, config = services.allocate_patient_number(context)

        assert calls == [0, 1]
        assert formatted == 'PT000002'
        assert last_number(hospital) == 2

    def test_gives_up_after_bounded_attempts(self, hospital, context, settings):
        settings.PATIENT_ID_ALLOCATION_ATTEMPTS = 3

        with patch.object(services, '_compare_and_swap_last_number', return_value=False) as cas:
            with pytest.raises(AllocationConflictError) as exc_info:
                services.allocate_patient_number(context)

        assert cas.call_count == 3
        assert exc_info.value.detail['attempts'] == 3
        assert last_number(hospital) == 0

    def test_stale_observed_value_does_not_write(self, hospital):
        Hospital.objects.filter(id=hospital.id).update(patient_id_last_number=5)
        assert services._compare_and_swap_last_number(hospital.id, 4, 5) is False
        assert last_number(hospital) == 5


@pytest.mark.django_db
class TestPreviewPatientId:

    def test_preview_does_not_consume(self, hospital, context):
        Hospital.objects.filter(id=hospital.id).update(patient_id_last_number=41)

        for _ in range(3):
            next_id, last_used_id, _ = services.preview_patient_id(context)
            assert next_id == 'PT000042'
            assert last_used_id == 'PT000041'

        assert last_number(hospital) == 41

    def test_preview_matches_allocation(self, hospital, context):
        next_id, _, _ = services.preview_patient_id(context)
        formatted, _ = services.allocate_patient_number(context)
        assert next_id == formatted


# -------------------------------------------------------------------
# Registration
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestRegisterPatient:

    def test_new_patient_routed_to_triage(self, hospital, context, new_patient_payload):
        patient = services.register_patient(context, new_patient_payload)

        patient.refresh_from_db()
        assert patient.patient_number == 'PT000001'
        assert patient.current_flow_step == 'triage'
        assert patient.priority_level == 'normal'
        assert patient.registration_type == 'new'
        assert patient.emergency_contact['name'] == 'Bob Wang'
        assert last_number(hospital) == 1

    def test_emergency_jane_doe(self, hospital, context, emergency_payload):
        patient = services.register_patient(context, emergency_payload)

        patient.refresh_from_db()
        assert patient.current_flow_step == 'emergency'
        assert patient.priority_level == 'critical'
        assert patient.registration_type == 'emergency'
        assert patient.date_of_birth is None

    def test_critical_new_patient_goes_to_emergency(self, context, new_patient_payload):
        new_patient_payload['priorityLevel'] = 'critical'
        patient = services.register_patient(context, new_patient_payload)
        assert patient.current_flow_step == 'emergency'

    def test_payment_details_stored_for_variant_only(self, context, new_patient_payload):
        new_patient_payload['paymentMethod'] = 'credit_card'
        new_patient_payload['paymentDetails'] = {
            'cardType': 'visa', 'lastFourDigits': '4242', 'insuranceProvider': 'ignored',
        }
        patient = services.register_patient(context, new_patient_payload)

        patient.refresh_from_db()
        assert patient.payment_method == 'credit_card'
        assert patient.payment_details == {'card_type': 'visa', 'last_four_digits': '4242'}

    def test_validation_failure_consumes_nothing(self, hospital, context, new_patient_payload):
        del new_patient_payload['address']
        new_patient_payload['email'] = 'nope'

        with pytest.raises(ValidationError) as exc_info:
            services.register_patient(context, new_patient_payload)

        fields = {e['field'] for e in exc_info.value.detail['errors']}
        assert fields == {'address', 'email'}
        assert Patient.objects.count() == 0
        assert last_number(hospital) == 0

    def test_insert_failure_rolls_back_sequence(self, hospital, context, new_patient_payload):
        with patch.object(services, 'insert_patient', side_effect=RuntimeError('db down')):
            with pytest.raises(RuntimeError):
                services.register_patient(context, new_patient_payload)

        assert last_number(hospital) == 0
        assert Patient.objects.count() == 0

    def test_manual_numbering(self, hospital, context, emergency_payload):
        Hospital.objects.filter(id=hospital.id).update(patient_id_auto_increment=False, patient_id_last_number=10)
        emergency_payload['manualSequenceNumber'] = 100

        patient = services.register_patient(context, emergency_payload)

        assert patient.patient_number == 'PT000100'
        assert last_number(hospital) == 100

    def test_manual_numbering_missing_number(self, hospital, context, emergency_payload):
        Hospital.objects.filter(id=hospital.id).update(patient_id_auto_increment=False)

        with pytest.raises(ValidationError) as exc_info:
            services.register_patient(context, emergency_payload)

        assert exc_info.value.code == 'MANUAL_SEQUENCE_REQUIRED'
        assert Patient.objects.count() == 0

    def test_hospital_prefix_format(self, hospital, context, emergency_payload):
        Hospital.objects.filter(id=hospital.id).update(patient_id_format='hospital_prefix_number')
        patient = services.register_patient(context, emergency_payload)
        assert patient.patient_number == 'GE-PT-000001'

    def test_manual_number_beyond_column_capacity(self, hospital, context, emergency_payload):
        Hospital.objects.filter(id=hospital.id).update(patient_id_auto_increment=False)
        emergency_payload['manualSequenceNumber'] = 10 ** 20

        with pytest.raises(ValidationError) as exc_info:
            services.register_patient(context, emergency_payload)

        assert exc_info.value.code == 'SEQUENCE_OUT_OF_RANGE'
        assert Patient.objects.count() == 0
        assert last_number(hospital) == 0

    def test_fractional_manual_number_rejected(self, hospital, context, emergency_payload):
        Hospital.objects.filter(id=hospital.id).update(patient_id_auto_increment=False)
        emergency_payload['manualSequenceNumber'] = 41.9

        with pytest.raises(ValidationError) as exc_info:
            services.register_patient(context, emergency_payload)

        assert exc_info.value.detail['errors'][0]['field'] == 'manualSequenceNumber'
        assert exc_info.value.detail['errors'][0]['code'] == 'invalid_format'

    def test_overlong_name_rejected_before_insert(self, hospital, context, emergency_payload):
        emergency_payload['firstName'] = 'J' * 101

        with pytest.raises(ValidationError) as exc_info:
            services.register_patient(context, emergency_payload)

        assert exc_info.value.detail['errors'] == [
            {'field': 'firstName', 'code': 'too_long', 'message': 'Must be at most 100 characters'},
        ]
        assert last_number(hospital) == 0


@pytest.mark.django_db(transaction=True)
class TestConcurrentRegistration:
    """真实的多线程并发登记，每个线程各自一个数据库连接。"""

    def test_parallel_registrations_get_distinct_contiguous_numbers(self, hospital, context, emergency_payload):
        workers = 4
        barrier = threading.Barrier(workers)
        numbers, failures = [], []

        def register():
            try:
                barrier.wait()
                patient = services.register_patient(context, dict(emergency_payload))
                numbers.append(patient.patient_number)
            except Exception as exc:  # 在主线程里断言
                failures.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=register) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert failures == []
        assert sorted(numbers) == [f'PT{n:06d}' for n in range(1, workers + 1)]
        assert last_number(hospital) == workers
        assert Patient.objects.filter(hospital=hospital).count() == workers


# -------------------------------------------------------------------
# Flow
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestAdvancePatientFlow:

    def test_default_successor(self, hospital, context):
        patient = PatientFactory(hospital=hospital, current_flow_step='triage')

        updated, previous = services.advance_patient_flow(context, patient.id)

        assert previous.value == 'triage'
        assert updated.current_flow_step == 'waiting_consultation'
        patient.refresh_from_db()
        assert patient.current_flow_step == 'waiting_consultation'

    def test_explicit_target(self, hospital, context):
        patient = PatientFactory(hospital=hospital, current_flow_step='post_consultation')
        services.advance_patient_flow(context, patient.id, 'pharmacy')

        patient.refresh_from_db()
        assert patient.current_flow_step == 'pharmacy'

    def test_discharged_to_triage_rejected_without_mutation(self, hospital, context):
        patient = PatientFactory(hospital=hospital, current_flow_step='discharged')

        with pytest.raises(InvalidTransitionError):
            services.advance_patient_flow(context, patient.id, 'triage')

        patient.refresh_from_db()
        assert patient.current_flow_step == 'discharged'

    def test_unknown_target(self, hospital, context):
        patient = PatientFactory(hospital=hospital)
        with pytest.raises(ValidationError) as exc_info:
            services.advance_patient_flow(context, patient.id, 'radiology')
        assert exc_info.value.code == 'MALFORMED_PAYLOAD'

    def test_patient_of_other_hospital_not_found(self, context):
        other = PatientFactory(hospital=HospitalFactory())
        with pytest.raises(BlockError) as exc_info:
            services.advance_patient_flow(context, other.id)
        assert exc_info.value.code == 'PATIENT_NOT_FOUND'

    def test_update_flow_step_unknown_patient(self):
        with pytest.raises(BlockError):
            services.update_patient_flow_step(uuid.uuid4(), 'triage')


@pytest.mark.django_db
class TestEscalatePriority:

    def test_raises_priority(self, hospital, context):
        patient = PatientFactory(hospital=hospital, priority_level='normal')
        services.escalate_patient_priority(context, patient.id, 'urgent')

        patient.refresh_from_db()
        assert patient.priority_level == 'urgent'

    def test_never_lowers(self, hospital, context):
        patient = PatientFactory(hospital=hospital, priority_level='critical')
        services.escalate_patient_priority(context, patient.id, 'normal')

        patient.refresh_from_db()
        assert patient.priority_level == 'critical'

    def test_invalid_priority(self, hospital, context):
        patient = PatientFactory(hospital=hospital)
        with pytest.raises(ValidationError):
            services.escalate_patient_priority(context, patient.id, 'meh')


# -------------------------------------------------------------------
# Queries
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestListPatientsAtStep:

    def test_filters_and_orders_by_priority(self, hospital, context):
        normal = PatientFactory(hospital=hospital, current_flow_step='triage', priority_level='normal')
        critical = PatientFactory(hospital=hospital, current_flow_step='triage', priority_level='critical')
        urgent = PatientFactory(hospital=hospital, current_flow_step='triage', priority_level='urgent')
        PatientFactory(hospital=hospital, current_flow_step='consultation')
        PatientFactory(current_flow_step='triage')  # 其他医院

        results, total = services.list_patients_at_step(context, 'triage')

        assert [p.id for p in results] == [critical.id, urgent.id, normal.id]
        assert total == 3

    def test_all_steps(self, hospital, context):
        PatientFactory(hospital=hospital, current_flow_step='triage')
        PatientFactory(hospital=hospital, current_flow_step='billing')
        patients, total = services.list_patients_at_step(context)
        assert len(patients) == total == 2

    def test_limit_keeps_true_total(self, hospital, context):
        PatientFactory.create_batch(4, hospital=hospital, current_flow_step='triage')

        patients, total = services.list_patients_at_step(context, 'triage', limit=2)

        assert len(patients) == 2
        assert total == 4


# -------------------------------------------------------------------
# ID settings
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestUpdateIdSettings:

    def test_valid_update(self, hospital, context):
        config = services.update_id_settings(context, {
            'patient_id_prefix': 'GH',
            'patient_id_digits': '8',
            'patient_id_format': 'prefix_year_number',
            'patient_id_last_number': 100,
        })

        assert config.prefix == 'GH'
        assert config.digit_width == 8
        hospital.refresh_from_db()
        assert hospital.patient_id_prefix == 'GH'
        assert hospital.patient_id_format == 'prefix_year_number'
        assert hospital.patient_id_last_number == 100

    def test_partial_update_keeps_other_fields(self, hospital, context):
        services.update_id_settings(context, {'patient_id_auto_increment': False})

        hospital.refresh_from_db()
        assert hospital.patient_id_auto_increment is False
        assert hospital.patient_id_prefix == 'PT'

    def test_invalid_config_rejected(self, hospital, context):
        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_prefix': '', 'patient_id_digits': 0})

        fields = {e['field'] for e in exc_info.value.detail['errors']}
        assert fields == {'patient_id_prefix', 'patient_id_digits'}
        hospital.refresh_from_db()
        assert hospital.patient_id_prefix == 'PT'

    def test_non_numeric_digits(self, context):
        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_digits': 'six'})
        assert exc_info.value.detail['errors'][0]['code'] == 'invalid_format'

    def test_cannot_lower_sequence(self, hospital, context):
        Hospital.objects.filter(id=hospital.id).update(patient_id_last_number=50)

        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_last_number': 10})

        assert exc_info.value.code == 'SEQUENCE_DECREASE'
        assert last_number(hospital) == 50

    def test_non_string_prefix(self, hospital, context):
        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_prefix': 123})

        assert exc_info.value.detail['errors'][0]['field'] == 'patient_id_prefix'
        assert exc_info.value.detail['errors'][0]['code'] == 'invalid_format'

    @pytest.mark.parametrize('value', ['false', '0', 0, None])
    def test_auto_increment_requires_real_boolean(self, hospital, context, value):
        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_auto_increment': value})

        assert exc_info.value.detail['errors'][0]['code'] == 'invalid_format'
        hospital.refresh_from_db()
        assert hospital.patient_id_auto_increment is True

    def test_fractional_last_number(self, context):
        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_last_number': 41.9})
        assert exc_info.value.detail['errors'][0]['code'] == 'invalid_format'

    def test_last_number_beyond_column_capacity(self, hospital, context):
        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_last_number': 10 ** 20})

        assert exc_info.value.detail['errors'][0]['field'] == 'patient_id_last_number'
        assert last_number(hospital) == 0

    def test_overlong_prefix(self, hospital, context):
        with pytest.raises(ConfigurationError) as exc_info:
            services.update_id_settings(context, {'patient_id_prefix': 'P' * 11})

        assert exc_info.value.detail['errors'][0]['code'] == 'too_long'
        hospital.refresh_from_db()
        assert hospital.patient_id_prefix == 'PT'
