"""
HTTP 层：只负责取参数、构造 IntakeContext、调用 service、序列化。

所有业务异常直接冒泡，由 exception_handler.unified_exception_handler 统一格式化。
"""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from . import services
from .serializers import (
    serialize_flow_transition,
    serialize_id_preview,
    serialize_id_settings,
    serialize_patient_detail,
    serialize_patient_queue,
    serialize_patient_registered,
    serialize_requirements,
)


class HospitalScopedView(APIView):
    """URL 里带 hospital_id 的接口共用：把医院和当前用户打包成 IntakeContext。"""

    def get_context(self, request, hospital_id):
        return services.build_context(hospital_id, getattr(request, 'user', None))


class IntakeRequirementsView(HospitalScopedView):
    """GET intake/requirements/?registrationType= - 必填字段与向导步骤"""

    def get(self, request, hospital_id):
        self.get_context(request, hospital_id)
        category, fields, steps = services.intake_requirements(request.query_params.get('registrationType'))
        return Response(serialize_requirements(category, fields, steps, services.payment_requirements()))


class IntakeValidateView(HospitalScopedView):
    """POST intake/validate/ - 试校验，不落库，始终 200"""

    def post(self, request, hospital_id):
        self.get_context(request, hospital_id)
        result = services.check_registration(request.data)
        return Response(result.as_dict())


class PatientListCreateView(HospitalScopedView):
    """GET patients/?step= - 流程队列；POST patients/ - 登记新患者"""

    def get(self, request, hospital_id):
        context = self.get_context(request, hospital_id)
        patients, total = services.list_patients_at_step(context, request.query_params.get('step'))
        return Response(serialize_patient_queue(patients, total))

    def post(self, request, hospital_id):
        context = self.get_context(request, hospital_id)
        patient = services.register_patient(context, request.data)
        return Response(serialize_patient_registered(patient), status=status.HTTP_201_CREATED)


class PatientDetailView(HospitalScopedView):
    """GET patients/<patient_id>/"""

    def get(self, request, hospital_id, patient_id):
        context = self.get_context(request, hospital_id)
        patient = services.get_patient_detail(context, patient_id)
        return Response(serialize_patient_detail(patient))


class PatientFlowView(HospitalScopedView):
    """POST patients/<patient_id>/flow/ - {"target": "..."}，不带 target 则走默认后继"""

    def post(self, request, hospital_id, patient_id):
        context = self.get_context(request, hospital_id)
        target = request.data.get('target') if isinstance(request.data, dict) else None
        patient, previous = services.advance_patient_flow(context, patient_id, target)
        return Response(serialize_flow_transition(patient, previous))


class PatientPriorityView(HospitalScopedView):
    """POST patients/<patient_id>/priority/ - {"priorityLevel": "urgent"}，只升不降"""

    def post(self, request, hospital_id, patient_id):
        context = self.get_context(request, hospital_id)
        priority = request.data.get('priorityLevel') if isinstance(request.data, dict) else None
        patient = services.escalate_patient_priority(context, patient_id, priority)
        return Response(serialize_patient_detail(patient))


class PatientIdPreviewView(HospitalScopedView):
    """GET patient-id/preview/ - 下一个编号预览，不消耗序号"""

    def get(self, request, hospital_id):
        context = self.get_context(request, hospital_id)
        next_id, last_used_id, config = services.preview_patient_id(context)
        return Response(serialize_id_preview(next_id, last_used_id, config))


class PatientIdSettingsView(HospitalScopedView):
    """GET / PUT patient-id/settings/ - 编号配置"""

    def get(self, request, hospital_id):
        context = self.get_context(request, hospital_id)
        return Response(serialize_id_settings(services.get_id_settings(context)))

    def put(self, request, hospital_id):
        context = self.get_context(request, hospital_id)
        config = services.update_id_settings(context, request.data)
        return Response(serialize_id_settings(config))
