"""内置示例资料：模拟的企业 SOP 与法规/文献摘录（纯文本，模拟上传文件的抽取结果）。

覆盖场景：
- 页眉页脚、页码残留、全角字符（测试文本规范化）
- 长段落与中英混排（测试切分与关键词抽取）
- 具体参数（温湿度限度、校准周期，测试精确短语加权）
- 流程步骤（测试流程图法风险识别）
"""

SAMPLE_SOPS = [
    {
        "filename": "SOP-QA-021 洁净区温湿度监控管理规程.txt",
        "text": """第 1 页 共 3 页
SOP-QA-021　洁净区温湿度监控管理规程

１．目的
规范洁净区温湿度监控、报警处置与数据审核，确保生产环境持续符合 GMP 要求。

２．范围
适用于固体制剂车间 C 级、D 级洁净区的温湿度监控系统（EMS）及手持式温湿度计。

３．职责
生产部负责日常巡检与报警初步处置；工程部负责传感器维护与校准；
QA 负责监控数据的审核与偏差调查的批准。

４．内容
4.1 温湿度限度：温度 18～26℃，相对湿度 45～65%。超出警戒限时 EMS 发出声光报警。
4.2 EMS 每 1 分钟采集一次数据，数据自动保存，审计追踪功能保持开启，普通用户无删除权限。
4.3 传感器每 12 个月校准一次，校准由工程部委托有资质的计量机构完成，校准证书交 QA 归档。
4.4 报警发生后，当班操作人员应在 15 分钟内到场确认，并在《温湿度报警处置记录》中记录原因与措施。
4.5 超出行动限且持续 30 分钟以上时，应按《偏差管理规程》启动偏差调查，评估对在产批次的影响。
4.6 QA 每周审核 EMS 趋势数据，每月出具温湿度趋势报告。
第 2 页 共 3 页
５．记录
《温湿度报警处置记录》《EMS 数据周审核记录》《传感器校准台账》。
""",
    },
    {
        "filename": "SOP-PR-008 颗粒干燥操作规程.txt",
        "text": """SOP-PR-008 颗粒干燥操作规程

1. 操作前检查：确认设备清洁状态标识、上批清场记录与 QA 放行签字。
2. 参数设置：进风温度 60±5℃，干燥终点以水分 ≤ 3.0% 为准；参数由班组长复核后方可启动。
3. 过程监控：每 30 分钟记录一次出风温度与物料温度，异常时立即停机并报告。
4. 取样检测：干燥结束后按取样规程取样，QC 测定水分，结果合格后方可转入下一工序。
5. 清场：按清场规程清场，填写清场记录，QA 检查合格后挂"已清洁"标识。
""",
    },
]

SAMPLE_LITERATURE = [
    {
        "filename": "ICH Q9(R1) 质量风险管理 摘录.txt",
        "text": """ICH Q9(R1) Quality Risk Management

质量风险管理是对药品在整个生命周期内的质量风险进行评估、控制、沟通和审核的系统过程。
风险评估包括风险识别、风险分析和风险评价。风险识别应系统地利用信息来识别危害源，
信息可以包括历史数据、理论分析、有根据的观点以及利益相关方的关注点。

The level of effort, formality and documentation of the quality risk management process
should be commensurate with the level of risk. 主观性会影响风险评估的各个环节，
应采取措施降低主观性，例如使用多学科团队与预先定义的评分标准。
""",
    },
    {
        "filename": "GMP 附录 无菌药品 环境监测要求 摘录.txt",
        "text": """洁净区的温度和相对湿度应当与药品生产要求相适应，无特殊要求时，
温度应当控制在 18～26℃，相对湿度控制在 45%～65%。
应当对环境监测系统进行确认，监测数据应当能够追溯，报警限度应当基于风险评估设定。
监测系统的计算机化系统应当符合数据完整性要求，包括审计追踪、权限管理和数据备份。
超出限度的情况应当记录并调查，评估对产品质量的影响，必要时采取纠正和预防措施（CAPA）。
""",
    },
]

SAMPLE_PROCESS_STEPS = [
    {"step_id": "S1", "step_name": "操作前检查"},
    {"step_id": "S2", "step_name": "参数设置"},
    {"step_id": "S3", "step_name": "过程监控"},
    {"step_id": "S4", "step_name": "取样检测"},
    {"step_id": "S5", "step_name": "清场"},
]

SAMPLE_INPUTS = [
    {
        "title": "洁净区温湿度监控风险评估",
        "scope": "固体制剂车间洁净区温湿度监控",
        "background": "EMS 系统上线两年，近半年出现 3 次湿度超警戒限报警，均在 30 分钟内恢复。",
        "objective": "评估现有温湿度监控与报警处置是否满足 GMP 要求",
        "risk_method": "五因素法",
        "eval_tool": "FMEA",
        "with_sources": True,
        "description": "五因素法 + SOP/文献检索",
    },
    {
        "title": "颗粒干燥工序风险评估",
        "scope": "颗粒干燥工序",
        "background": "新增一台流化床干燥机，沿用现有干燥操作规程。",
        "objective": "识别新设备导入后干燥工序的主要风险，必须采取措施降低高风险项",
        "risk_method": "流程图法",
        "eval_tool": "FMEA",
        "with_sources": True,
        "description": "流程图法 + 目标强制生成措施",
    },
]


def build_sample_input(sample: dict) -> dict:
    """把示例场景组装为 ReportInput 所需的字段。"""
    data = {
        key: sample[key]
        for key in ("title", "scope", "background", "objective", "risk_method", "eval_tool")
    }
    if sample.get("with_sources"):
        data["sop_sources"] = [dict(doc, category="sop") for doc in SAMPLE_SOPS]
        data["literature_sources"] = [dict(doc, category="literature") for doc in SAMPLE_LITERATURE]
    if "流程" in sample["risk_method"]:
        data["process_steps"] = SAMPLE_PROCESS_STEPS
    return data
