from cropdoc.models import DiagnosticResult, Severity

DEMO_IMAGE_URL = "https://images.unsplash.com/photo-1592433051053-431835703f8a?q=80&w=1000&auto=format&fit=crop"

DEMO_RESULT = DiagnosticResult(
    crop="Tomato",
    disease="Late Blight (Phytophthora infestans)",
    confidence=0.984,
    is_plant=True,
    severity=Severity.HIGH,
    description=(
        "Late blight is a potentially devastating disease of tomato caused by the oomycete "
        "Phytophthora infestans. It thrives in cool, wet weather and can rapidly destroy "
        "foliage and fruit."
    ),
    symptoms=(
        "Dark, water-soaked spots on leaves",
        "White fungal growth on leaf undersides",
        "Large brown lesions on stems",
        "Firm, dark brown decay on tomato fruit",
    ),
    recommendations=(
        "Apply copper-based fungicides immediately",
        "Remove and destroy all infected plant material",
        "Improve air circulation between plants",
        "Use drip irrigation to avoid leaf moisture",
        "Monitor nearby potato crops for similar symptoms",
    ),
)
