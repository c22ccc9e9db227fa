"""Core caption model: segmentation, visibility, frame planning, progress, payload IR."""
