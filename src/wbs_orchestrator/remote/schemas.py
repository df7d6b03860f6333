"""Fixed column schemas of the WBS and portfolio sheets."""

from enum import Enum

from pydantic import BaseModel, Field


class ColumnType(str, Enum):
    """Smartsheet column types."""

    TEXT_NUMBER = "TEXT_NUMBER"
    DATE = "DATE"
    CONTACT_LIST = "CONTACT_LIST"
    CHECKBOX = "CHECKBOX"
    PICKLIST = "PICKLIST"


class ColumnSchema(BaseModel):
    """Schema definition for a known column."""

    field: str = Field(description="Semantic field name used by the rest of the system")
    title: str
    aliases: list[str] = Field(default_factory=list)
    type: ColumnType = ColumnType.TEXT_NUMBER
    primary: bool = False
    formula: bool = Field(default=False, description="Formula-derived; never written")
    options: list[str] | None = None

    @property
    def titles(self) -> list[str]:
        return [self.title, *self.aliases]

    @property
    def writable(self) -> bool:
        return not self.formula


class SheetSchema(BaseModel):
    """Schema definition for a known sheet."""

    name: str
    columns: list[ColumnSchema]

    def get_primary_column(self) -> ColumnSchema | None:
        for col in self.columns:
            if col.primary:
                return col
        return None

    def get_column(self, field: str) -> ColumnSchema | None:
        """Find a column by its semantic field name."""
        for col in self.columns:
            if col.field == field:
                return col
        return None

    def get_column_by_title(self, title: str) -> ColumnSchema | None:
        wanted = title.strip().lower()
        for col in self.columns:
            if any(t.lower() == wanted for t in col.titles):
                return col
        return None

    def formula_fields(self) -> set[str]:
        return {col.field for col in self.columns if col.formula}


WBS_STATUS_OPTIONS = ["Not Started", "In Progress", "Blocked", "Complete"]

WBS_SCHEMA = SheetSchema(
    name="Work Breakdown Schedule",
    columns=[
        ColumnSchema(field="name", title="Name", aliases=["Task Name"], primary=True),
        ColumnSchema(field="description", title="Description"),
        ColumnSchema(field="owner", title="Assigned To", type=ColumnType.CONTACT_LIST),
        ColumnSchema(field="approver", title="Approver", type=ColumnType.CONTACT_LIST),
        ColumnSchema(
            field="status",
            title="Status",
            type=ColumnType.PICKLIST,
            options=WBS_STATUS_OPTIONS,
        ),
        ColumnSchema(field="start_date", title="Start Date", type=ColumnType.DATE),
        ColumnSchema(field="end_date", title="End Date", type=ColumnType.DATE),
        ColumnSchema(field="at_risk", title="At Risk", type=ColumnType.CHECKBOX),
        ColumnSchema(field="budget", title="Budget"),
        ColumnSchema(field="actual", title="Actual"),
        ColumnSchema(field="variance", title="Variance", formula=True),
        ColumnSchema(field="notes", title="Notes"),
        ColumnSchema(field="code", title="WBS", formula=True),
        ColumnSchema(field="skip", title="Skip WBS", type=ColumnType.CHECKBOX, formula=True),
    ],
)

PORTFOLIO_SCHEMA = SheetSchema(
    name="Project Portfolio",
    columns=[
        ColumnSchema(field="code", title="###", primary=True),
        ColumnSchema(field="title", title="Project Name"),
        ColumnSchema(field="description", title="Description"),
        ColumnSchema(field="category", title="Category"),
        ColumnSchema(field="approved_by", title="Approved By", type=ColumnType.CONTACT_LIST),
        ColumnSchema(field="approval_status", title="Approval Status", type=ColumnType.PICKLIST),
        ColumnSchema(field="assigned_to", title="Assigned To", type=ColumnType.CONTACT_LIST),
        ColumnSchema(field="project_plan", title="Project Plan"),
        ColumnSchema(field="status", title="Status", type=ColumnType.PICKLIST),
        ColumnSchema(field="start_date", title="Start Date", type=ColumnType.DATE),
        ColumnSchema(field="end_date", title="End Date", type=ColumnType.DATE),
        ColumnSchema(field="at_risk", title="At Risk", type=ColumnType.CHECKBOX),
        ColumnSchema(field="budget", title="Budget"),
        ColumnSchema(field="actual", title="Actual"),
        ColumnSchema(field="variance", title="Variance", formula=True),
        ColumnSchema(field="requires_wbs", title="Work Breakdown Needed?"),
        ColumnSchema(field="app_link", title="WBS App Link"),
        ColumnSchema(field="last_update", title="Last Update", type=ColumnType.DATE),
    ],
)
