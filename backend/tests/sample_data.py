"""
Sample registry, language tokens, locations and records shared by the tests,
plus a task runner that holds jobs until asked to run them.
"""
from dataexport.ports.tasks import TaskRunner, TaskStatus

QUESTIONNAIRE = [
    {
        "variable": "fever",
        "text": "LNG_QUESTION_FEVER",
        "answer_type": "LNG_REFERENCE_DATA_CATEGORY_QUESTION_ANSWER_TYPE_SINGLE_ANSWER",
        "answers": [
            {"value": "1", "label": "LNG_ANSWER_YES"},
            {"value": "2", "label": "LNG_ANSWER_NO"},
        ],
    },
    {
        "variable": "symptoms",
        "text": "LNG_QUESTION_SYMPTOMS",
        "multi_answer": True,
        "answer_type": "LNG_REFERENCE_DATA_CATEGORY_QUESTION_ANSWER_TYPE_MULTIPLE_ANSWERS",
        "answers": [
            {"value": "cough", "label": "LNG_ANSWER_COUGH"},
            {"value": "rash", "label": "LNG_ANSWER_RASH"},
        ],
    },
]

REGISTRY = {
    "version": 1,
    "schemas": {
        "case": {
            "collection": "case",
            "field_labels": {
                "id": "LNG_CASE_FIELD_LABEL_ID",
                "firstName": "LNG_CASE_FIELD_LABEL_FIRST_NAME",
                "lastName": "LNG_CASE_FIELD_LABEL_LAST_NAME",
                "gender": "LNG_CASE_FIELD_LABEL_GENDER",
                "addresses": "LNG_CASE_FIELD_LABEL_ADDRESSES",
                "questionnaireAnswers": "LNG_CASE_FIELD_LABEL_QUESTIONNAIRE_ANSWERS",
            },
            "export_fields_order": ["id", "firstName", "lastName", "gender", "addresses"],
            "array_fields": {
                "addresses": {
                    "city": "LNG_ADDRESS_FIELD_LABEL_CITY",
                    "locationId": "LNG_ADDRESS_FIELD_LABEL_LOCATION",
                },
            },
            "location_fields": ["addresses[].locationId"],
            "export_field_groups": {
                "LNG_GROUP_DEMOGRAPHICS": ["id", "firstName", "lastName", "gender"],
                "LNG_GROUP_ADDRESSES": ["addresses"],
                "LNG_COMMON_LABEL_EXPORT_GROUP_LOCATION_ID_DATA": [],
            },
            "questionnaire": QUESTIONNAIRE,
        },
        "person": {
            "collection": "case",
            "field_labels": {
                "id": "LNG_CASE_FIELD_LABEL_ID",
                "firstName": "LNG_CASE_FIELD_LABEL_FIRST_NAME",
                "lastName": "LNG_CASE_FIELD_LABEL_LAST_NAME",
                "gender": "LNG_CASE_FIELD_LABEL_GENDER",
                "active": "LNG_CASE_FIELD_LABEL_ACTIVE",
            },
        },
        "contact": {
            "collection": "contact",
            "scope_query": {"active": True},
            "field_labels": {
                "id": "LNG_CASE_FIELD_LABEL_ID",
                "firstName": "LNG_CASE_FIELD_LABEL_FIRST_NAME",
            },
        },
    },
}

TOKENS = {
    "english_us": {
        "LNG_CASE_FIELD_LABEL_ID": "ID",
        "LNG_CASE_FIELD_LABEL_FIRST_NAME": "First name",
        "LNG_CASE_FIELD_LABEL_LAST_NAME": "Last name",
        "LNG_CASE_FIELD_LABEL_GENDER": "Gender",
        "LNG_CASE_FIELD_LABEL_ACTIVE": "Active",
        "LNG_CASE_FIELD_LABEL_ADDRESSES": "Addresses",
        "LNG_CASE_FIELD_LABEL_QUESTIONNAIRE_ANSWERS": "Questionnaire",
        "LNG_ADDRESS_FIELD_LABEL_CITY": "City",
        "LNG_ADDRESS_FIELD_LABEL_LOCATION": "Location",
        "LNG_REFERENCE_DATA_CATEGORY_GENDER_FEMALE": "Female",
        "LNG_REFERENCE_DATA_CATEGORY_GENDER_MALE": "Male",
        "LNG_QUESTION_FEVER": "Fever",
        "LNG_QUESTION_SYMPTOMS": "Symptoms",
        "LNG_ANSWER_YES": "Yes",
        "LNG_ANSWER_NO": "No",
        "LNG_ANSWER_COUGH": "Cough",
        "LNG_ANSWER_RASH": "Rash",
        "LNG_LOCATION_FIELD_LABEL_ID": "Location ID",
        "LNG_LOCATION_FIELD_LABEL_IDENTIFIERS": "Identifiers",
        "LNG_LOCATION_FIELD_LABEL_IDENTIFIER": "Identifier",
        "LNG_OUTBREAK_FIELD_LABEL_LOCATION_GEOGRAPHICAL_LEVEL": "Level",
        "LNG_LOCATION_FIELD_LABEL_PARENT_LOCATION": "Parent",
        "LNG_LEVEL_COUNTRY": "Country",
        "LNG_LEVEL_REGION": "Region",
        "LNG_LEVEL_CITY": "City level",
    },
    "french_fr": {
        "LNG_CASE_FIELD_LABEL_FIRST_NAME": "Prénom",
        "LNG_REFERENCE_DATA_CATEGORY_GENDER_FEMALE": "Femme",
    },
}

LOCATIONS = [
    {"id": "loc-country", "name": "Freedonia", "geographical_level_id": "LNG_LEVEL_COUNTRY"},
    {
        "id": "loc-region",
        "name": "North",
        "parent_location_id": "loc-country",
        "geographical_level_id": "LNG_LEVEL_REGION",
    },
    {
        "id": "loc-city",
        "name": "Harbor",
        "parent_location_id": "loc-region",
        "geographical_level_id": "LNG_LEVEL_CITY",
        "identifiers": [{"code": "HB-01"}, {"code": "HB-02"}],
    },
]

CASES = [
    {
        "id": "case-1",
        "data": {
            "firstName": "Ana",
            "lastName": "Lopez",
            "gender": "LNG_REFERENCE_DATA_CATEGORY_GENDER_FEMALE",
            "addresses": [],
            "questionnaireAnswers": {"fever": [{"value": "1"}]},
        },
    },
    {
        "id": "case-2",
        "data": {
            "firstName": "Ben",
            "lastName": "Okafor",
            "gender": "LNG_REFERENCE_DATA_CATEGORY_GENDER_MALE",
            "addresses": [
                {"city": "Harbor", "locationId": "loc-city"},
                {"city": "Northville", "locationId": "loc-region"},
            ],
            "questionnaireAnswers": {
                "symptoms": [
                    {"value": ["cough", "rash"], "date": "2024-03-01"},
                    {"value": ["cough"], "date": "2024-03-02"},
                ],
            },
        },
    },
    {
        "id": "case-3",
        "data": {
            "firstName": "Cleo",
            "lastName": "Martin",
            "gender": "LNG_REFERENCE_DATA_CATEGORY_GENDER_FEMALE",
            "addresses": [{"city": "Harbor", "locationId": "loc-city"}],
        },
    },
]


class DeferredRunner(TaskRunner):
    """Holds submitted jobs until the test runs them."""

    def __init__(self):
        self.pending = []

    def submit(self, func, *args, task_id=None, **kwargs):
        self.pending.append((func, args, kwargs))
        return task_id

    def status(self, task_id):
        return TaskStatus.PENDING

    def result(self, task_id, timeout=None):
        return None

    def run_all(self):
        while self.pending:
            func, args, kwargs = self.pending.pop(0)
            func(*args, **kwargs)
