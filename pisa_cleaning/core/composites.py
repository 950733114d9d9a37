# pisa_cleaning/core/composites.py

from typing import Dict
from .spec import CompositeSpec

COMPOSITE_REGISTRY: Dict[str, CompositeSpec] = {

    # =====================
    # Student derived
    # =====================
    "stdv_perseverance_agreement_self": CompositeSpec(
        name="stdv_perseverance_agreement_self",
        items=(
            "st_persistence_task_finished",
            "st_extra_effort_challenging",
            "st_persistence_boring_task",
            "st_stop_difficult_task",
            "st_more_persistent_than_others",
            "st_give_up_after_mistakes",
            "st_quit_long_homework",
            "st_persistence_difficult_task",
            "st_finish_what_start",
            "st_give_up_easily",
        ),
        reversed_items=(
            "st_stop_difficult_task",
            "st_give_up_after_mistakes",
            "st_quit_long_homework",
            "st_give_up_easily",
        ),
        reversal_rule="likert",
        scale_max=4,
        persist_reversal=True,         # negatively worded items stay reversed
        anchor="stdv_school_safety_risk",
        description="Perseverance (agreement), rebuilt from raw items",
        data_source="student_derived",
    ),

    # =====================
    # ICT derived
    # =====================
    "icdv_ict_enquiry_learning_self": CompositeSpec(
        name="icdv_ict_enquiry_learning_self",
        items=(
            "ic_digital_create_multimedia_presentation",
            "ic_digital_write_edit_text",
            "ic_digital_find_info_real_world",
            "ic_digital_collect_record_data",
            "ic_digital_analyze_data",
            "ic_digital_report_share_results",
            "ic_digital_plan_manage_projects",
            "ic_digital_track_progress",
            "ic_digital_collaborate_create_content",
            "ic_digital_play_learning_games",
        ),
        anchor="icdv_ict_use_subject_lessons",
        description="ICT use for enquiry-based learning",
        data_source="ict_derived",
    ),

    "icdv_ict_support_feedback_self": CompositeSpec(
        name="icdv_ict_support_feedback_self",
        items=(
            "ic_digital_feedback_teacher",
            "ic_digital_feedback_peers",
            "ic_digital_feedback_auto_generated",
            "ic_digital_practice_exercises_apps",
        ),
        anchor="icdv_ict_enquiry_learning_self",
        description="ICT support and feedback",
        data_source="ict_derived",
    ),

    "icdv_ict_outside_class_self": CompositeSpec(
        name="icdv_ict_outside_class_self",
        items=(
            "ic_digital_view_grades_results",
            "ic_digital_browse_schoolwork_info",
            "ic_digital_browse_lesson_followup",
            "ic_digital_receive_assignments_teacher",
            "ic_digital_upload_work",
            "ic_digital_communicate_teacher",
            "ic_digital_communicate_peers",
            "ic_digital_search_assignment_info",
        ),
        anchor="icdv_ict_support_feedback_self",
        description="ICT use for schoolwork outside the classroom",
        data_source="ict_derived",
    ),

    # =====================
    # School derived
    # =====================
    "scdv_digital_device_policies_self": CompositeSpec(
        name="scdv_digital_device_policies_self",
        items=(
            "sc_written_statement_digital_devices",
            "sc_no_cell_phones_policy",
            "sc_formal_digital_guidelines",
            "sc_teacher_set_rules_digital_use",
            "sc_collab_student_rules_digital_use",
            "sc_responsible_internet_program",
            "sc_social_network_policy",
            "sc_collab_digital_teachers",
            "sc_teacher_meeting_digital_materials",
        ),
        reversed_items=(
            "sc_written_statement_digital_devices",
            "sc_no_cell_phones_policy",
            "sc_formal_digital_guidelines",
            "sc_teacher_set_rules_digital_use",
            "sc_collab_student_rules_digital_use",
            "sc_responsible_internet_program",
            "sc_social_network_policy",
            "sc_collab_digital_teachers",
            "sc_teacher_meeting_digital_materials",
        ),
        reversal_rule="binary",
        item_coding={"Yes": 1.0, "No": 0.0},
        anchor="scdv_tablet_availability",
        description="Digital device policies",
        data_source="school_derived",
    ),

    "scdv_diversity_multicultural_views_self": CompositeSpec(
        name="scdv_diversity_multicultural_views_self",
        items=(
            "sc_staff_help_recognize_similarities",
            "sc_staff_encourage_common_ground",
            "sc_staff_support_diverse_identities",
            "sc_staff_teach_respond_discrimination",
            "sc_staff_teach_inclusivity",
            "sc_staff_support_disadvantaged",
        ),
        anchor="scdv_math_teacher_training",
        description="Staff views on diversity and multicultural education",
        data_source="school_derived",
    ),
}
